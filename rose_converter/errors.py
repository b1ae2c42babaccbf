"""Error types raised by the codec, the glTF bridge and the lightmap baker."""

from __future__ import annotations

from typing import Optional


class FormatError(Exception):
    pass


class TruncatedError(FormatError):
    pass


class UnknownFormatError(FormatError):
    pass


class InvalidSkeletonError(FormatError):
    pass


class InvalidWeightsError(FormatError):
    pass


class InvalidMeshError(FormatError):
    pass


class InvalidAnimationError(FormatError):
    pass


class UnsupportedFeatureError(FormatError):
    pass


class BakeError(Exception):
    """Failure while baking a single object instance."""

    def __init__(self, message: str, instance: Optional[int] = None) -> None:
        super().__init__(message)
        self.instance = instance

    def __reduce__(self):
        # Keep the instance index when the error crosses a process boundary.
        return (type(self), (self.args[0], self.instance))


class AtlasOverflowError(BakeError):
    pass


class DegenerateGeometryError(BakeError):
    pass
