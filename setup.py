"""
Setup script for execution-engine
"""

from setuptools import setup, find_packages
import pathlib

# Read the README file
HERE = pathlib.Path(__file__).parent
README = (HERE / "README.md").read_text(encoding="utf-8")

setup(
    name="execution-engine",
    version="1.0.0",
    description="Sandboxed multi-language code execution and grading engine",
    long_description=README,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["execution_engine", "execution_engine.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "aiodocker>=0.21.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "pyyaml>=6.0.1",
        "structlog>=23.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX :: Linux",
    ],
    keywords="sandbox code-execution grading education",
)
