# -*- coding: utf-8 -*-
"""
Py4GMX: joint gravity/magnetic potential-field inversion.
"""

from . import modules

__version__ = "0.9.0"
