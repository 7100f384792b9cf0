#!/usr/bin/env python3
"""
Setup script for mrm
"""

from setuptools import setup
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text() if readme_path.exists() else ""

setup(
    name="mrm",
    version="0.1.0",
    description="Multi-repository issue workspaces with git worktree",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="mrm",
    author_email="",
    py_modules=[
        "mrm",
        "mrm_config",
        "mrm_errors",
        "mrm_git",
        "mrm_models",
        "mrm_paths",
        "mrm_security",
        "mrm_state",
        "mrm_workspace",
    ],
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "mrm=mrm:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Tools",
        "Topic :: Software Development :: Version Control :: Git",
    ],
    keywords="git worktree multi-root workspace issue cli",
    install_requires=[
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
            "mypy",
        ],
        "test": [
            "pytest",
        ],
    },
)
