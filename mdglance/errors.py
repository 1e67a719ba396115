"""Error taxonomy shared by the document loader, the coordinator and the CLI."""

from __future__ import annotations

from pathlib import Path


class MdGlanceError(Exception):
    """Base class for expected, user-facing failures."""

    def __init__(self, message: str, path: str | Path | None = None):
        super().__init__(message)
        self.path = str(path) if path is not None else None


class NotFoundError(MdGlanceError):
    pass


class EmptyFileError(MdGlanceError):
    pass


class ReadFailureError(MdGlanceError):
    pass


class UnsupportedTypeError(MdGlanceError):
    pass


class EndpointBusyError(MdGlanceError):
    """Another daemon already answers on the rendezvous endpoint."""
