"""
AirSonos Bridge セットアップスクリプト
"""

from setuptools import setup, find_packages
from pathlib import Path

# README読み込み
README = Path("README.md")
long_description = README.read_text() if README.exists() else ""

setup(
    name="airsonos-bridge",
    version="0.3.0",
    description="Self-tuning AirPlay to Sonos audio bridge runtime",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="AirSonos Bridge Project",

    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",

    install_requires=[
        "flask>=2.0.0",
        "psutil>=5.8.0",
        "netifaces>=0.11.0",
        "pyyaml>=5.4.0",
        "soco>=0.29.0",
        "zeroconf>=0.100.0"
    ],

    extras_require={
        "dev": [
            "pytest>=6.0.0",
            "pytest-mock>=3.6.0",
            "pytest-cov>=3.0.0"
        ]
    },

    entry_points={
        "console_scripts": [
            "airsonos-bridge=airsonos_bridge.main:main",
        ]
    },

    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Topic :: Multimedia :: Sound/Audio",
        "Topic :: System :: Networking",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Operating System :: POSIX :: Linux",
    ],

    keywords="airplay sonos streaming audio bridge self-tuning",
)
