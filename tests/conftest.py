"""Shared fixtures: in-memory database, fake storage, sample match sheet."""

from datetime import date

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import matchdesk.models  # noqa: F401  (registers tables)
from matchdesk.database import build_session_factory
from matchdesk.models import Athlete, Match, SandboxMatch
from matchdesk.sumula.errors import StorageError

SAMPLE_SUMULA = """
FEDERACAO PARANAENSE DE FUTEBOL
SUMULA DE JOGO
Mandante: Galo Maringá
Visitante: Operário Ferroviário
Data: 12/05/2024 16:00
Placar final: 2 x 1
EQUIPE MANDANTE
TITULARES
1 - JOAO SILVA (G) CBF 100001
10 - CARLOS SOUZA (C) CBF 100010
7 - PEDRO LIMA CBF 100007
RESERVAS
17 - LUCAS ROCHA CBF 100017
GOLS
1T 23' 10 CARLOS SOUZA
1T 40' 7 PEDRO LIMA (PENALTI)
CARTOES
2T 05' AMARELO 7 PEDRO LIMA
SUBSTITUICOES
2T 10' SAI 7 PEDRO LIMA ENTRA 17 LUCAS ROCHA
EQUIPE VISITANTE
TITULARES
1 - MARCOS PEREIRA (G)
9 - ANDRE COSTA
RESERVAS
12 - BRUNO ALVES
GOLS
1T 30' 9 ANDRE COSTA
CARTOES
1T 40' AMARELO 9 ANDRE COSTA
2T 20' SEGUNDO AMARELO 9 ANDRE COSTA
"""

FAKE_PDF = b"%PDF-1.4\n% fake match sheet\n"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


class FakeStorage:
    """In-memory storage adapter."""

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: list[tuple[str, str]] = []

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        self.uploads.append((bucket, path))
        self.objects[(bucket, path)] = data

    async def download(self, bucket: str, path: str) -> bytes:
        try:
            return self.objects[(bucket, path)]
        except KeyError:
            raise StorageError(f"Object not found: {bucket}/{path}", stage="STORAGE")


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def sample_sumula():
    return SAMPLE_SUMULA


@pytest.fixture
def fake_pdf():
    return FAKE_PDF


@pytest.fixture
def make_extractor():
    """Factory for text extractors returning fixed text."""

    def factory(text: str = SAMPLE_SUMULA):
        async def extract(data: bytes) -> str:
            return text

        return extract

    return factory


@pytest.fixture
def extractor(make_extractor):
    return make_extractor()


@pytest.fixture
async def prod_match(session_factory):
    match = Match(
        competition_name="Campeonato Paranaense",
        season_year=2024,
        match_date=date(2024, 5, 12),
        opponent="Operário Ferroviário",
        home=True,
    )
    async with session_factory() as session:
        session.add(match)
        await session.commit()
    return match


@pytest.fixture
async def sandbox_match(session_factory):
    match = SandboxMatch(label="Treino coletivo", home_team="Galo A", away_team="Galo B")
    async with session_factory() as session:
        session.add(match)
        await session.commit()
    return match


@pytest.fixture
async def club_athletes(session_factory):
    """Two registered athletes: one linkable by CBF registry, one by name."""
    athletes = [
        Athlete(name="João Silva", cbf_registry="100001", club_name="Galo Maringá", source="FPF"),
        Athlete(name="Carlos Souza", club_name="Galo Maringá", source="MANUAL"),
    ]
    async with session_factory() as session:
        session.add_all(athletes)
        await session.commit()
    return athletes

