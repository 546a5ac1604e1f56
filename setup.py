"""
Setup script for tg-kafka-bridge
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="tg-kafka-bridge",
    version="1.0.0",
    author="YuDev",
    description="Ordered, at-least-once bridge from Telegram bot updates to Kafka",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5.0",
        "PyYAML>=6.0",
        "httpx>=0.25.0",
        "aiokafka>=0.10.0",
        "redis[hiredis]>=5.0.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "tg-kafka-bridge=tg_kafka_bridge.app:run_cli",
        ]
    },
    include_package_data=True,
    zip_safe=False,
)
