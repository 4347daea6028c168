#!/usr/bin/python3
# Setup file for celluloid
# Copyright (C) 2025 The Celluloid Authors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

tests_require = ["pytest"]

setup(
    name="celluloid",
    version="0.1.0",
    description="Git repositories stored in SQLite, with migrations run on push",
    license="Apache-2.0 OR GPL-2.0-or-later",
    python_requires=">=3.10",
    packages=["celluloid"],
    package_data={"": ["py.typed"]},
    install_requires=["dulwich>=0.22.0"],
    extras_require={"test": tests_require},
    entry_points={
        "console_scripts": [
            "celluloid=celluloid.cli:_main",
            "git-remote-celluloid=celluloid.cli:_remote_helper_main",
        ],
    },
)
