"""Infrastructure layer for Clinical Intake.

This module contains configuration loading, application settings, logging setup
and report output.
"""
