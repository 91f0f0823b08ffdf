from setuptools import find_namespace_packages, setup


setup(
    name="llm-relay",
    version="0.1.0",
    description="Two-model text generation relay with streaming and automatic failover.",
    package_dir={"": "src"},
    packages=find_namespace_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "httpx>=0.27",
        "tenacity>=8.2",
        "structlog>=24.1",
        "rich>=13.7",
        "typer>=0.12",
        "fastapi>=0.110",
        "uvicorn>=0.29",
        "markdown-it-py>=3.0",
        "nh3>=0.2.14",
    ],
    extras_require={
        "dev": ["pytest>=8.0", "pytest-asyncio>=0.23", "ruff>=0.6", "mypy>=1.8"],
    },
    entry_points={"console_scripts": ["llm-relay=llm_relay.cli:app"]},
)
