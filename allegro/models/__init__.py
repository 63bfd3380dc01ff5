"""Request, response and view shapes exchanged over the wire.

Field names are part of the public contract and are kept exactly as clients
send and expect them."""

from enum import Enum
from typing import Annotated, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

# Integer columns are 32-bit; out-of-range values are refused before any write
MAX_INT = 2**31 - 1
Int32 = Annotated[int, Field(ge=-MAX_INT - 1, le=MAX_INT)]
RowId = Annotated[int, Field(ge=1, le=MAX_INT)]


class ContributorKind(str, Enum):
    PERFORMER = "performer"
    COMPOSER = "composer"
    SONGWRITER = "songwriter"

    @property
    def table(self) -> str:
        return f"{self.value}s"


class CatalogKind(str, Enum):
    """Every entity kind that can be fetched or searched."""

    PERFORMER = "performer"
    COMPOSER = "composer"
    SONGWRITER = "songwriter"
    PIECE = "piece"
    RELEASE = "release"
    RECORDING = "recording"

    @property
    def contributor(self) -> ContributorKind | None:
        try:
            return ContributorKind(self.value)
        except ValueError:
            return None


class Response(BaseModel, Generic[T]):
    """Generic envelope denoting whether an operation was successful."""

    success: bool
    message: T


# Authentication ---------------------------------------------------------


class AuthRequest(BaseModel):
    username: str
    password: str


class AddUserRequest(BaseModel):
    username: str
    password: str
    token: str = ""


class AuthResponse(BaseModel):
    access: bool
    token: Optional[str] = None


# Catalog requests -------------------------------------------------------


class IdRequest(BaseModel):
    id: Int32


class SearchRequest(BaseModel):
    query: str
    token: str = ""


class AddArtistRequest(BaseModel):
    name: str
    description: Optional[str] = None
    has_image: bool = False
    artist_type: ContributorKind
    token: str = ""


class AddReleaseRequest(BaseModel):
    name: str
    performer_ids: list[RowId] = []
    description: Optional[str] = None
    has_image: bool = False
    token: str = ""


class AddPieceRequest(BaseModel):
    name: str
    movements: Optional[Int32] = None
    composer_ids: list[RowId] = []
    songwriter_ids: Optional[list[RowId]] = None
    description: Optional[str] = None
    token: str = ""


class AddRecordingRequest(BaseModel):
    piece_id: Int32
    release_id: Int32
    performer_ids: list[RowId] = []
    track_number: Int32
    has_file: bool = False
    token: str = ""


# Views ------------------------------------------------------------------


class Contributor(BaseModel):
    """A performer, composer or songwriter."""

    id: int
    name: str
    description: Optional[str] = None
    image_path: Optional[str] = None

    @classmethod
    def not_found(cls) -> "Contributor":
        return cls(id=-1, name="")


class Piece(BaseModel):
    id: int
    name: str
    movements: Optional[int] = None
    description: Optional[str] = None
    composer_ids: list[int] = []
    # None rather than [] when the piece has no songwriters
    songwriter_ids: Optional[list[int]] = None

    @classmethod
    def not_found(cls) -> "Piece":
        return cls(id=-1, name="")


class Release(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    image_path: Optional[str] = None
    performer_ids: list[int] = []
    # None rather than [] when nothing has been recorded on this release yet
    recording_ids: Optional[list[int]] = None

    @classmethod
    def not_found(cls) -> "Release":
        return cls(id=-1, name="")


class Recording(BaseModel):
    id: int
    piece_name: str
    piece_id: int
    release_id: int
    track_number: int
    file_path: Optional[str] = None
    performer_ids: list[int] = []

    @classmethod
    def not_found(cls) -> "Recording":
        return cls(id=-1, piece_name="", piece_id=-1, release_id=-1, track_number=0)
