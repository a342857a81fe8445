# -*- coding: utf-8 -*-
"""Circle-dot calibration board detection and robust camera calibration."""

__version__ = "0.3.0"
