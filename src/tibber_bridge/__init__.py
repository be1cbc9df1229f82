"""
Tibber InfluxDB Bridge - live and historical electricity metering into InfluxDB.

This package streams Tibber live measurements into InfluxDB and backfills
hourly consumption history so that each home has a gap-free series.
"""

__version__ = "1.0.0"
__author__ = "Tibber Bridge Team"

NAME = "tibber-influx-bridge"
