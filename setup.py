"""Setup script for slotrunner package."""

from setuptools import find_packages, setup

setup(
    name="slotrunner",
    version="0.1.0",
    description="Parallel issue runner that drives coding agents in git worktrees",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
    ],
    extras_require={
        "tests": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "slotrunner=slotrunner.runner:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
