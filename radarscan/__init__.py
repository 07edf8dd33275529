"""RadarScan: URL security scans rendered as PDF reports."""
