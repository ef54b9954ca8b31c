"""Type aliases for arcarray."""

from typing import TYPE_CHECKING, Sequence, Tuple, TypeAlias, Union

if TYPE_CHECKING:
    from .types import SpatialReference

# Type aliases for better user experience
ObjectIds: TypeAlias = Union[int, Sequence[int]]
ChunkSize: TypeAlias = Tuple[int, int]  # (width, height)
CRSLike: TypeAlias = Union["SpatialReference", str, int, None]
