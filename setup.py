"""
Setup script for CertMon.
"""

from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent


def read_requirements(filename):
    """Read non-comment lines from a requirements file next to this script."""
    path = HERE / filename
    if not path.exists():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.startswith("#")]


setup(
    name="certmon",
    version="1.0.0",
    description="Watch TLS certificate chain expiration of internet domains",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    install_requires=read_requirements("requirements.txt"),
    extras_require={"dev": read_requirements("requirements-dev.txt")},
    entry_points={"console_scripts": ["certmon=main:main"]},
    classifiers=[
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Topic :: System :: Monitoring",
        "Topic :: Internet :: WWW/HTTP",
    ],
    python_requires=">=3.10",
    keywords="tls certificate expiration prometheus",
)
