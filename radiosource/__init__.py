"""Robust radio source localization.

This package locates WiFi access points and beacons from ranging and RSSI
readings, and estimates their transmitted power and path-loss exponent:
- estimators: Linear/non-linear least squares and the robust consensus engine
- rf: Readings, radio sources, lateration solvers and the sequential estimator
- utils: Geometry helpers
"""

__version__ = "0.1.0"
