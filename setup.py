"""Setup script for the Payment Guard security and risk core."""

from setuptools import setup, find_packages

setup(
    name="payment-guard",
    version="1.0.0",
    description=(
        "Payment security and risk core: PII masking, vault encryption, risk scoring, "
        "Pix payment codes, webhook authentication and first-order discounts"
    ),
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["payment_guard", "payment_guard.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
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
            "payment-guard-reconciler=payment_guard.workers.status_reconciler:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
