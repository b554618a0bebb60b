"""
Safe Self-Update Engine.

This package checks a remote release registry for a newer version of one
installed unit, downloads and validates the release package, backs up the
current installation, installs the new version, and restores the backup
automatically when any step after the backup fails.
"""

__version__ = "0.1.0"
