"""
distrain — Setup Script
=======================
Installs distrain as a local editable package so that all internal
imports (e.g. `from distrain.training.worker import TrainingWorker`) work
seamlessly from any script or notebook.

Usage:
    cd /path/to/distrain
    pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="distrain",
    version="0.1.0",
    author="Aditya",
    description=(
        "distrain: Distributed Iterative Gradient Training Workers and "
        "Multi-Model Ensemble Scoring"
    ),
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["distrain", "distrain.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.24.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0",
        "scikit-learn>=1.3.0",
        "joblib>=1.3.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
