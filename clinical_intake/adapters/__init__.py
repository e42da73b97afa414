"""Adapters layer for Clinical Intake.

This module contains the adapters that implement the domain ports: record sources,
checkpoint media, record sinks and the host resource probe.
"""
