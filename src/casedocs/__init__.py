"""casedocs core library.

This package collects the reference documents attached to auction case pages:
it resolves each attachment link in a live browser page into a concrete file
(or a definitive "not a file" verdict), downloads with rate limiting and
integrity checks, and keeps a per-case manifest of what was obtained and what
is still missing.

Repo rules:
- The login itself is done by the user; the tool only reuses the session.
- Generated case directories are the correct place for collected documents.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
