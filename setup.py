#!/usr/bin/env python
"""
Setup script for Supersafe
"""

from setuptools import setup, find_packages

# Read the contents of README file
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name="supersafe",
    version="0.1.0",
    description="Privacy-first AI threat detection for home security cameras",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Softreck Team",
    author_email="team@softreck.com",
    url="https://github.com/softreck/supersafe",
    packages=find_packages(include=["supersafe", "supersafe.*"]),
    package_data={"supersafe.prompts": ["*.txt"]},
    python_requires=">=3.8",
    install_requires=[
        "aiohttp>=3.9.0",
        "pydantic>=2.0.0",
        "rich>=13.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "camera": ["opencv-python>=4.8.0", "numpy>=1.24.0"],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "supersafe=supersafe.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Video :: Capture",
        "Topic :: Security",
    ],
    keywords="security camera, threat detection, vision llm, text to speech, asyncio",
)
