"""Setup script for the payment gateway sandbox."""

from setuptools import setup, find_packages

setup(
    name="sandbox-gateway",
    version="0.1.0",
    description="Payment gateway sandbox: checkout sessions, recurring billing and signed webhooks",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.11.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sandbox-gateway=sandbox_gateway.api.main:run",
            "sandbox-renewal-worker=sandbox_gateway.workers.renewal_worker:main",
            "sandbox-webhook-retry-worker=sandbox_gateway.workers.webhook_retry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
