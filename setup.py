"""
Setup script for material-kg-build.

material-kg-build derives the knowledge-graph layer that sits between ingested
learning materials and generated learning paths:

1. File Signatures - per-file summaries, outlines and embeddings
2. Material Signals - intents, chunk roles, set coverage and concept edges
3. Path Intake - learning-path proposals with a chat clarification loop

The 'kgbuild' command runs individual stages and maintenance tasks.
"""

from setuptools import find_namespace_packages, setup

setup(
    name="material-kg-build",
    version="0.1.0",
    description="LLM-backed knowledge-graph build stages for uploaded learning materials",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="Right Learning",
    packages=find_namespace_packages(include=["src", "src.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "psycopg2-binary>=2.9.0",
        "asyncpg>=0.29.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Vector math
        "numpy>=1.24.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "kgbuild=src.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
    ],
    keywords="learning knowledge-graph llm education pipeline",
)
