"""
SubtitleQueue: setuptools build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Then:
    subqueue --help
"""

from setuptools import setup

APP_NAME = "subtitle-queue"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Queue and translate YouTube videos into SRT subtitles with Gemini",
    packages=[
        "subqueue",
        "subqueue.core",
        "subqueue.cli",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "subqueue=subqueue.cli.commands:main",
        ],
    },
    python_requires=">=3.10",
)
