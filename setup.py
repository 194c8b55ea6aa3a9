"""Setup configuration for tenant-jobs library."""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="tenant-jobs",
    version="0.1.0",
    author="Tenant Jobs Contributors",
    description="Multi-tenant job queue, rate limiting, quotas and billing reconciliation on Postgres",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.9",
    install_requires=[
        "asyncpg>=0.27.0",
        "pydantic>=2.0.0",
        "aiohttp>=3.8.0",
        "redis>=4.2.0",
        "cachetools>=5.0.0",
        "stripe>=8.0.0",
    ],
    extras_require={
        "fastapi": [
            "fastapi>=0.110.0",
            "uvicorn[standard]>=0.20.0",
        ],
        "dev": [
            "fastapi>=0.110.0",
            "httpx>=0.24.0",
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "testcontainers[postgres]>=3.7.0",
            "docker>=6.0.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "tenant-jobs-worker=tenant_jobs.worker_main:main",
            "tenant-jobs-reaper=tenant_jobs.reaper_main:main",
        ],
    },
)
