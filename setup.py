"""Setup script for MyFamily Payments."""

from setuptools import setup, find_packages

setup(
    name="myfamily-payments",
    version="0.1.0",
    description="Family fund ledger and card payment cascade for MyFamily",
    author="MyFamily",
    python_requires=">=3.10",
    packages=find_packages(include=["myfamily_payments", "myfamily_payments.*"]),
    package_data={"myfamily_payments.database": ["migrations/versions/*.py"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
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
            "myfamily-reconcile=myfamily_payments.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
