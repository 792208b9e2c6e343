"""
Setup configuration for goop package.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="goop",
    version="0.1.0",
    description="Thin wrapper around Google Cloud Pub/Sub: idempotent provisioning, publishing and consuming",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.11",
    install_requires=[
        "google-cloud-pubsub>=2.18.0",
        "google-api-core>=2.11.0",
        "google-auth>=2.22.0",
        "pydantic>=2.5.0",
        "elasticsearch>=8.11.0",  # Optional log shipping
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
)
