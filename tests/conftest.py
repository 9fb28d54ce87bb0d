from decimal import Decimal

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from minichess.app.authorization import capture_message, identity_of, session_message, sign_message
from minichess.app.config import EscrowConfig
from minichess.app.escrow_service import EscrowService
from minichess.app.value_rail import InMemoryRail


DOMAIN = "minichess:test:1"
STAKE = Decimal("2.50")
START_FUNDS = Decimal("10")


class FakeClock:
    """Reloj controlado por el test (epoch en segundos)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Player:
    """Jugador de prueba con su llave Ed25519."""

    def __init__(self, name: str):
        self.name = name
        self.key = Ed25519PrivateKey.generate()
        self.identity = identity_of(self.key)

    def sign(self, message: bytes) -> str:
        return sign_message(self.key, message)

    def session(self, game_id: int, domain: str = DOMAIN) -> str:
        return self.sign(session_message(domain, game_id))

    def capture(self, game_id: int, piece_type: int, capture_id: str, domain: str = DOMAIN) -> str:
        return self.sign(capture_message(domain, game_id, self.identity, piece_type, capture_id))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EscrowConfig(domain=DOMAIN)


@pytest.fixture
def alice():
    return Player("alice")


@pytest.fixture
def bob():
    return Player("bob")


@pytest.fixture
def carol():
    return Player("carol")


@pytest.fixture
def rail(clock, alice, bob, carol):
    rail = InMemoryRail(clock)
    for player in (alice, bob, carol):
        rail.credit(player.identity, START_FUNDS)
    return rail


@pytest.fixture
def service(config, clock, rail):
    return EscrowService(config=config, clock=clock, rail=rail)


@pytest.fixture
def start_game(service, alice, bob):
    """Crea y activa una partida con ambas sesiones autorizadas."""

    async def _start(creator=None, joiner=None):
        creator = creator or alice
        joiner = joiner or bob
        game_id = service.next_game_id()
        await service.create_game_with_session(creator.identity, STAKE, creator.session(game_id))
        await service.join_game_with_session(game_id, joiner.identity, STAKE, joiner.session(game_id))
        return game_id

    return _start


@pytest.fixture
def capture(service):
    """Envía una captura firmada por el captor."""

    async def _capture(game_id, captor, piece_type, capture_id):
        signature = captor.capture(game_id, int(piece_type), capture_id)
        return await service.capture_piece(game_id, captor.identity, piece_type, capture_id, signature)

    return _capture
