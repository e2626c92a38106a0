"""calbridge - two-way CalDAV calendar synchronization."""

from calbridge.version import get_version

__version__ = get_version()
