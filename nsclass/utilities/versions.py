"""
Detecting the operator's own version, as installed.

The version is only used to self-identify in the API requests (User-Agent)
and in the startup logs. It is determined once when the code is loaded.
"""
import importlib.metadata
from typing import Optional

version: Optional[str] = None

try:
    version = importlib.metadata.version('nsclass')
except importlib.metadata.PackageNotFoundError:
    pass  # running from a source tree with no installation.
