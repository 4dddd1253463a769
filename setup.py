from setuptools import find_namespace_packages, setup

setup(
    name="agent-engine-client",
    version="0.1.0",
    packages=find_namespace_packages(include=["src", "src.*"]),
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.5",
        "google-auth>=2.20",
        "cryptography>=41.0",
        "structlog>=23.1",
        "python-dotenv>=1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "pytest-httpx>=0.30",
            "hypothesis>=6.90",
        ],
    },
    entry_points={
        "console_scripts": [
            "agent-engine-query=src.core.cli:main",
        ],
    },
    description="Streaming client for Vertex AI Agent Engine reasoning engines.",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
