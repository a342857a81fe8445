# -*- coding: utf-8 -*-
"""Debug stage images and calibration heatmaps."""
