from __future__ import annotations


class CalMirrorError(RuntimeError):
    """Base class for every failure raised by calmirror."""


class ConfigError(CalMirrorError):
    """Raised when the configuration file is missing values or malformed."""


class SourceFetchError(CalMirrorError):
    """The source could not be read; never to be treated as an empty calendar."""


class SourceAuthError(SourceFetchError):
    pass


class MirrorError(CalMirrorError):
    """A read or write against the mirror store failed."""


class MirrorAuthError(MirrorError):
    pass


class IdentifierCollisionError(MirrorError):
    """A freshly generated identifier already exists on the mirror."""


class EmptySourceError(CalMirrorError):
    """Source returned no events while the mirror still holds some."""
