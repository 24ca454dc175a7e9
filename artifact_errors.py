"""
Error taxonomy shared by the artifact decoders.

Hard failures for a single source are raised. Partial outcomes are returned on
result objects (see prefetch_volume.VolumeDecodeResult, bits_carve.CarveResult and
bits.WindowsArtifactCollection) so the caller decides whether to log or keep going.
"""


class ArtifactError(Exception):
    """Base class for every decoding/collection condition."""


class ReadFailure(ArtifactError):
    """Source could not be read. Skip that source, continue the others."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not read {path}" + (f": {reason}" if reason else ""))


class MissingExpectedTable(ArtifactError):
    """Table extraction did not yield a required table."""

    def __init__(self, table: str, path: str = ""):
        self.table = table
        self.path = path
        where = f" in {path}" if path else ""
        super().__init__(f"Missing expected table '{table}'{where}")


class UnsupportedFormatVersion(ArtifactError):
    def __init__(self, version: int, what: str = "format"):
        self.version = version
        self.what = what
        super().__init__(f"Unsupported {what} version: {version}")


class StructuralTruncation(ArtifactError):
    """Buffer ended in the middle of a record."""


class CarveFailure(ArtifactError):
    pass


class UnknownSignature(ArtifactError):
    """Magic bytes at the start of a structure are not the expected ones."""

    def __init__(self, what: str, found: bytes = b""):
        self.what = what
        self.found = found
        super().__init__(f"Unexpected {what} signature: {found.hex() or 'none'}")
