"""
allegro.catalog
===============

Repositories for the six catalog entity kinds and the assembly of their
views.  A view is a base row plus the ids found in its edge tables; related
objects are never inlined, callers fetch them separately by id.

Writes are not wrapped in a transaction.  Creating a piece and then linking
its composers is several independent statements, and a rejected edge (a
duplicate pair or an unknown composer id) is logged and skipped while the
rest of the write goes ahead.
"""

import logging
from typing import NamedTuple

from allegro.auth import is_admin
from allegro.db import IntegrityError, execute, insert_returning_id, placeholders
from allegro.models import (
    AddArtistRequest,
    AddPieceRequest,
    AddRecordingRequest,
    AddReleaseRequest,
    CatalogKind,
    Contributor,
    ContributorKind,
    Piece,
    Recording,
    Release,
    Response,
)
from allegro.utils import clean_name, derived_path

logger = logging.getLogger(__name__)

NOT_ADMIN = 'User is not an admin'


#############################
# Edge tables
#############################


class EdgeTable(NamedTuple):
    """A many-to-many table linking ``parent`` ids to ``child`` ids."""

    table: str
    parent: str
    child: str


PIECE_COMPOSERS = EdgeTable('piece_composers', 'piece_id', 'composer_id')
PIECE_SONGWRITERS = EdgeTable('piece_songwriters', 'piece_id', 'songwriter_id')
RELEASE_PERFORMERS = EdgeTable('release_performers', 'release_id', 'performer_id')
RECORDING_PERFORMERS = EdgeTable('recording_performers', 'recording_id', 'performer_id')
# Not a join table, but recordings point at their release the same way
RELEASE_RECORDINGS = EdgeTable('recordings', 'release_id', 'id')


def add_edges(conn, edge: EdgeTable, parent_id: int, child_ids) -> int:
    """Insert one edge row per child id and return how many were written.

    Each insert stands on its own; a rejected row does not stop the others."""
    written = 0
    for child_id in child_ids:
        cur = conn.cursor()
        try:
            execute(cur,
                f'INSERT INTO {edge.table} ({edge.parent}, {edge.child}) VALUES (%s, %s)',
                (parent_id, child_id),
            )
        except IntegrityError as exc:
            logger.warning('Skipped %s edge (%s, %s): %s', edge.table, parent_id, child_id, exc)
            continue
        written += 1
    return written


def load_edges(conn, edge: EdgeTable, parent_ids: list[int]) -> dict[int, list[int]]:
    """Return ``{parent_id: [child_id, ...]}`` for all ``parent_ids`` in one query.

    Child ids keep the order in which the edges were written.  Parents without
    edges are absent from the result."""
    if not parent_ids:
        return {}
    cur = conn.cursor()
    execute(cur,
        f'SELECT {edge.parent} AS parent, {edge.child} AS child FROM {edge.table} '
        f'WHERE {edge.parent} IN ({placeholders(len(parent_ids))}) ORDER BY id',
        tuple(parent_ids),
    )
    grouped: dict[int, list[int]] = {}
    for row in cur.fetchall():
        grouped.setdefault(row['parent'], []).append(row['child'])
    return grouped


#############################
# Repositories
#############################


class CatalogDAO:
    """Shared read side: base rows in id order, assembled into views."""

    table = ''
    search_column = 'name'

    def __init__(self, conn):
        self.conn = conn

    def _rows(self, where: str = '', params=()) -> list[dict]:
        cur = self.conn.cursor()
        execute(cur, f'SELECT * FROM {self.table}{where} ORDER BY id', params)
        return [dict(row) for row in cur.fetchall()]

    def _set_column(self, column: str, entity_id: int, value) -> None:
        cur = self.conn.cursor()
        execute(cur, f'UPDATE {self.table} SET {column} = %s WHERE id = %s', (value, entity_id))

    def assemble(self, rows: list[dict]) -> list:
        raise NotImplementedError

    def get(self, entity_id: int):
        rows = self._rows(' WHERE id = %s', (entity_id,))
        if not rows:
            return None
        return self.assemble(rows)[0]

    def list_all(self) -> list:
        return self.assemble(self._rows())

    def find(self, pattern: str) -> list:
        """Return views whose search column matches the LIKE ``pattern``, ignoring case."""
        return self.assemble(
            self._rows(f' WHERE LOWER({self.search_column}) LIKE LOWER(%s)', (pattern,))
        )


class ContributorDAO(CatalogDAO):
    """Performers, composers and songwriters share one table layout."""

    def __init__(self, conn, kind: ContributorKind):
        super().__init__(conn)
        self.kind = kind
        self.table = kind.table

    def create(self, name: str, description: str | None) -> int:
        cur = self.conn.cursor()
        return insert_returning_id(cur,
            f'INSERT INTO {self.table} (name, description) VALUES (%s, %s)',
            (name, description),
        )

    def set_image_path(self, contributor_id: int) -> str:
        path = derived_path(self.kind.value, contributor_id)
        self._set_column('image_path', contributor_id, path)
        return path

    def assemble(self, rows: list[dict]) -> list[Contributor]:
        return [
            Contributor(
                id=row['id'],
                name=row['name'],
                description=row['description'],
                image_path=row['image_path'],
            )
            for row in rows
        ]


class PieceDAO(CatalogDAO):
    table = 'pieces'

    def create(self, name: str, movements: int | None, description: str | None) -> int:
        cur = self.conn.cursor()
        return insert_returning_id(cur,
            'INSERT INTO pieces (name, movements, description) VALUES (%s, %s, %s)',
            (name, movements, description),
        )

    def add_composers(self, piece_id: int, composer_ids) -> int:
        return add_edges(self.conn, PIECE_COMPOSERS, piece_id, composer_ids)

    def add_songwriters(self, piece_id: int, songwriter_ids) -> int:
        return add_edges(self.conn, PIECE_SONGWRITERS, piece_id, songwriter_ids)

    def assemble(self, rows: list[dict]) -> list[Piece]:
        ids = [row['id'] for row in rows]
        composers = load_edges(self.conn, PIECE_COMPOSERS, ids)
        songwriters = load_edges(self.conn, PIECE_SONGWRITERS, ids)
        return [
            Piece(
                id=row['id'],
                name=row['name'],
                movements=row['movements'],
                description=row['description'],
                composer_ids=composers.get(row['id'], []),
                songwriter_ids=songwriters.get(row['id']) or None,
            )
            for row in rows
        ]


class ReleaseDAO(CatalogDAO):
    table = 'releases'

    def create(self, name: str, description: str | None) -> int:
        cur = self.conn.cursor()
        return insert_returning_id(cur,
            'INSERT INTO releases (name, description) VALUES (%s, %s)',
            (name, description),
        )

    def set_image_path(self, release_id: int) -> str:
        path = derived_path('release', release_id)
        self._set_column('image_path', release_id, path)
        return path

    def add_performers(self, release_id: int, performer_ids) -> int:
        return add_edges(self.conn, RELEASE_PERFORMERS, release_id, performer_ids)

    def assemble(self, rows: list[dict]) -> list[Release]:
        ids = [row['id'] for row in rows]
        performers = load_edges(self.conn, RELEASE_PERFORMERS, ids)
        recordings = load_edges(self.conn, RELEASE_RECORDINGS, ids)
        return [
            Release(
                id=row['id'],
                name=row['name'],
                description=row['description'],
                image_path=row['image_path'],
                performer_ids=performers.get(row['id'], []),
                recording_ids=recordings.get(row['id']) or None,
            )
            for row in rows
        ]


class RecordingDAO(CatalogDAO):
    table = 'recordings'
    search_column = 'piece_name'

    def create(self, piece_name: str, piece_id: int, release_id: int, track_number: int) -> int:
        cur = self.conn.cursor()
        return insert_returning_id(cur,
            'INSERT INTO recordings (piece_name, piece_id, release_id, track_number) '
            'VALUES (%s, %s, %s, %s)',
            (piece_name, piece_id, release_id, track_number),
        )

    def set_file_path(self, recording_id: int) -> str:
        path = derived_path('recording', recording_id)
        self._set_column('file_path', recording_id, path)
        return path

    def add_performers(self, recording_id: int, performer_ids) -> int:
        return add_edges(self.conn, RECORDING_PERFORMERS, recording_id, performer_ids)

    def assemble(self, rows: list[dict]) -> list[Recording]:
        performers = load_edges(self.conn, RECORDING_PERFORMERS, [row['id'] for row in rows])
        # performer_ids stays a list even when empty, unlike the optional id lists
        # on pieces and releases
        return [
            Recording(
                id=row['id'],
                piece_name=row['piece_name'],
                piece_id=row['piece_id'],
                release_id=row['release_id'],
                track_number=row['track_number'],
                file_path=row['file_path'],
                performer_ids=performers.get(row['id'], []),
            )
            for row in rows
        ]


def dao_for(conn, kind: CatalogKind) -> CatalogDAO:
    contributor = kind.contributor
    if contributor is not None:
        return ContributorDAO(conn, contributor)
    return {
        CatalogKind.PIECE: PieceDAO,
        CatalogKind.RELEASE: ReleaseDAO,
        CatalogKind.RECORDING: RecordingDAO,
    }[kind](conn)


_NOT_FOUND = {
    CatalogKind.PERFORMER: Contributor.not_found,
    CatalogKind.COMPOSER: Contributor.not_found,
    CatalogKind.SONGWRITER: Contributor.not_found,
    CatalogKind.PIECE: Piece.not_found,
    CatalogKind.RELEASE: Release.not_found,
    CatalogKind.RECORDING: Recording.not_found,
}


#############################
# Operations
#############################


def get_item(conn, kind: CatalogKind, entity_id: int) -> Response:
    """Return one view, or the ``id == -1`` placeholder if it does not exist."""
    view = dao_for(conn, kind).get(entity_id)
    if view is None:
        return Response(success=False, message=_NOT_FOUND[kind]())
    return Response(success=True, message=view)


def get_all(conn, kind: CatalogKind) -> Response:
    return Response(success=True, message=dao_for(conn, kind).list_all())


def add_artist(conn, req: AddArtistRequest) -> Response[str]:
    """Add a performer, composer or songwriter and return its image path, if any."""
    if not is_admin(conn, req.token):
        return Response(success=False, message=NOT_ADMIN)
    name = clean_name(req.name)
    if not name:
        return Response(success=False, message='Name cannot be empty')

    dao = ContributorDAO(conn, req.artist_type)
    artist_id = dao.create(name, req.description)
    image_path = dao.set_image_path(artist_id) if req.has_image else ''
    logger.info('Added %s %d (%s)', req.artist_type.value, artist_id, name)
    return Response(success=True, message=image_path)


def add_piece(conn, req: AddPieceRequest) -> Response[str]:
    if not is_admin(conn, req.token):
        return Response(success=False, message=NOT_ADMIN)
    name = clean_name(req.name)
    if not name:
        return Response(success=False, message='Name cannot be empty')

    dao = PieceDAO(conn)
    piece_id = dao.create(name, req.movements, req.description)
    dao.add_composers(piece_id, req.composer_ids)
    dao.add_songwriters(piece_id, req.songwriter_ids or [])
    logger.info('Added piece %d (%s)', piece_id, name)
    return Response(success=True, message='Piece successfully added')


def add_release(conn, req: AddReleaseRequest) -> Response[str]:
    """Add a release and return its image path, if any."""
    if not is_admin(conn, req.token):
        return Response(success=False, message=NOT_ADMIN)
    name = clean_name(req.name)
    if not name:
        return Response(success=False, message='Name cannot be empty')

    dao = ReleaseDAO(conn)
    release_id = dao.create(name, req.description)
    image_path = dao.set_image_path(release_id) if req.has_image else ''
    dao.add_performers(release_id, req.performer_ids)
    logger.info('Added release %d (%s)', release_id, name)
    return Response(success=True, message=image_path)


def add_recording(conn, req: AddRecordingRequest) -> Response[str]:
    """Add a recording of an existing piece on an existing release.

    The piece name is copied onto the recording at this point and is not
    updated afterwards."""
    if not is_admin(conn, req.token):
        return Response(success=False, message=NOT_ADMIN)
    piece = PieceDAO(conn).get(req.piece_id)
    if piece is None:
        return Response(success=False, message='Piece not found')
    if ReleaseDAO(conn).get(req.release_id) is None:
        return Response(success=False, message='Release not found')

    dao = RecordingDAO(conn)
    recording_id = dao.create(piece.name, piece.id, req.release_id, req.track_number)
    file_path = dao.set_file_path(recording_id) if req.has_file else ''
    dao.add_performers(recording_id, req.performer_ids)
    logger.info('Added recording %d of piece %d', recording_id, piece.id)
    return Response(success=True, message=file_path)
