#!/usr/bin/env python3
from setuptools import setup

import pyhapcam.const as pyhapcam_const

NAME = "HAP-camera-stream"
DESCRIPTION = "HomeKit camera streaming sessions backed by FFmpeg"
URL = "https://github.com/hap-camera-stream/{}".format(NAME)


PROJECT_URLS = {
    "Bug Reports": "{}/issues".format(URL),
    "Source": "{}/tree/master".format(URL),
}


MIN_PY_VERSION = ".".join(map(str, pyhapcam_const.REQUIRED_PYTHON_VER))

with open("README.md", "r", encoding="utf-8") as f:
    README = f.read()


REQUIRES = ["aiohttp>=3.8"]


setup(
    name=NAME,
    version=pyhapcam_const.__version__,
    description=DESCRIPTION,
    long_description=README,
    long_description_content_type="text/markdown",
    url=URL,
    packages=["pyhapcam"],
    include_package_data=True,
    project_urls=PROJECT_URLS,
    python_requires=">={}".format(MIN_PY_VERSION),
    install_requires=REQUIRES,
    license="Apache License 2.0",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Natural Language :: English",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Home Automation",
        "Topic :: Multimedia :: Video",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    extras_require={
        "test": ["pytest", "pytest-asyncio"],
    },
)
