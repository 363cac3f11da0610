"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="bizlevel-chat",
    version="0.1.0",
    description="BizLevel AI assistant chat pipeline",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "pydantic>=2",
        "pydantic-settings",
        "structlog",
        "google-generativeai",
        "google-api-core",
        "firebase-admin",
        "google-cloud-firestore",
        "httpx",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "bizlevel-chat=bizlevel_chat.cli:main",
        ],
    },
)
