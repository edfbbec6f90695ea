"""Build and install the pmlite package."""

from setuptools import setup, find_packages

setup(
    name="pmlite",
    version="0.1.0",
    description="PM-LITE framed telemetry protocol: decoder, TCP session and MRS capture tooling",
    package_dir={"": "python"},
    packages=find_packages("python", include=["pmlite", "pmlite.*"]),
    python_requires=">=3.10",
    install_requires=["numpy"],
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": ["pmlite=pmlite.cli:main"],
    },
)
