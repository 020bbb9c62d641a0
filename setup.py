#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import re

from setuptools import setup


def get_version(package):
    """
    Return package version as listed in `__version__` in `init.py`.
    """
    init_py = open(os.path.join(package, "__init__.py")).read()
    return re.search("__version__ = ['\"]([^'\"]+)['\"]", init_py).group(1)


def get_long_description():
    """
    Return the README.
    """
    return open("README.md", "r", encoding="utf8").read()


def get_packages(package):
    """
    Return root package and all sub-packages.
    """
    return [
        dirpath
        for dirpath, dirnames, filenames in os.walk(package)
        if os.path.exists(os.path.join(dirpath, "__init__.py"))
    ]


setup(
    name="emailpipe-harness",
    version=get_version("emailpipe_harness"),
    license="BSD",
    description="Delivery and isolation checks for an SMTP to HTTP notification pipeline",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    package_data={"emailpipe_harness": ["py.typed"]},
    packages=get_packages("emailpipe_harness"),
    python_requires=">=3.8",
    install_requires=[
        "anyio>=4.0",
        "httpx>=0.24",
        "psutil>=5.9",
        "pydantic>=2.0",
        "pydantic-settings>=2.7",
        "starlette>=0.27",
        "typing-extensions>=4.0",
        "uvicorn>=0.23",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: POSIX",
        "Topic :: Communications :: Email",
        "Topic :: Software Development :: Testing",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
    ],
)
