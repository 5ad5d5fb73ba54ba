"""
DocVault setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="docvault",
    version="1.0.0",
    description="DocVault — Multi-tenant document vault core",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "docvault=docvault.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "redis>=5.0",
        "celery[redis]>=5.3",
        "cryptography>=42.0",
        "pyyaml>=6.0",
        "boto3>=1.34",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
