"""Setup script for the voice bot."""

from setuptools import setup, find_namespace_packages

setup(
    name="voicebot",
    version="1.0.0",
    description="Voice-driven medical assistant with interruptible spoken replies",
    author="Your Name",
    packages=find_namespace_packages(
        include=["voicebot", "voicebot.*"],
        exclude=["voicebot.tests"],
    ),
    python_requires=">=3.11",
    install_requires=[
        "python-dotenv>=1.0.0",
        "google-generativeai>=0.3.0",
        "elevenlabs>=2.0.0",
        "pygame>=2.5.0",
        "structlog>=23.0.0",
        "click>=8.0.0",
        "httpx>=0.25.0",
        "numpy>=1.24.0",
        "sounddevice>=0.4.6",
        "soundfile>=0.12.0",
        "webrtcvad>=2.0.10",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "voicebot=voicebot.cli.main:cli",
        ],
    },
)
