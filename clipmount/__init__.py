# Copyright Red Hat
#
# clipmount/__init__.py - Mount manager package initialisation
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Clipmount top-level package.
"""
from ._clipmount import *  # noqa: F401, F403
from ._clipmount import __all__  # noqa: F401

__version__ = "1.1.0"
