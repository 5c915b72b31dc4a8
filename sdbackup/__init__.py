"""Live incremental backups of an SD card into a sparse loopback disk image."""

from sdbackup.__version__ import __version__


__all__ = ["__version__"]
