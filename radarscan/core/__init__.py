"""RadarScan core components.

This package contains the scan session lifecycle controller, the session and
report stores it persists to, the remote scan provider client, and the PDF
renderer used to turn provider results into report artifacts.
"""
