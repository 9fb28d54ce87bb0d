from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from minichess.app.errors import CaptureReplayed, PersistenceFailed
from minichess.app.escrow_service import EscrowService
from minichess.app.ledger import GameRegistry, GameStatus
from minichess.app.persistence import EscrowRepository
from minichess.app.settlement import PieceType
from minichess.app.statistics import PlayerStatistics
from minichess.models import create_session_factory

from conftest import STAKE


@pytest.fixture
async def repository(tmp_path):
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    repository = EscrowRepository(factory)
    await repository.create_schema()
    yield repository
    await factory.kw["bind"].dispose()


@pytest.fixture
def service(config, clock, rail, repository):
    return EscrowService(config=config, clock=clock, rail=rail, repository=repository)


async def test_state_survives_restart(service, repository, config, clock, start_game, capture, alice, bob):
    finished = await start_game()
    await capture(finished, alice, PieceType.KNIGHT, "f-1")
    await service.end_game(finished, bob.identity, alice.identity)

    active = await start_game(creator=bob, joiner=alice)
    await capture(active, bob, PieceType.PAWN, "a-1")
    await capture(active, alice, PieceType.ROOK, "a-2")

    waiting = await service.create_game(alice.identity, STAKE)

    restored = EscrowService(config=config, clock=clock, repository=repository)
    assert await restored.restore() == 3

    for game_id in (finished, active, waiting):
        assert restored.get_game(game_id) == service.get_game(game_id)
    assert restored.processed_captures(active) == {"a-1", "a-2"}
    assert restored.next_game_id() == 4

    stats = restored.get_player_stats(alice.identity)
    assert (stats.games_played, stats.games_won) == (1, 1)
    assert stats.total_earned == Decimal("0.15")
    assert restored.get_player_game_history(bob.identity) == [finished]


async def test_restored_service_rejects_replayed_capture(service, repository, config, clock, rail, start_game, capture, alice):
    game_id = await start_game()
    await capture(game_id, alice, PieceType.PAWN, "cap-1")

    restored = EscrowService(config=config, clock=clock, rail=rail, repository=repository)
    await restored.restore()
    signature = alice.capture(game_id, int(PieceType.PAWN), "cap-1")

    with pytest.raises(CaptureReplayed):
        await restored.capture_piece(game_id, alice.identity, PieceType.PAWN, "cap-1", signature)
    assert restored.get_game(game_id).balance_a == Decimal("2.55")


async def test_history_is_appended_not_rewritten(service, repository, start_game, alice, bob):
    for _ in range(3):
        game_id = await start_game()
        await service.end_game(game_id, alice.identity, bob.identity)

    loaded = {s.player: s for s in await repository.load_stats()}

    assert loaded[bob.identity].game_history == [1, 2, 3]
    assert loaded[bob.identity].games_won == 3
    assert loaded[alice.identity].games_lost == 3


class StatsWriteFails(EscrowRepository):
    """Falla al escribir estadísticas, dentro de la misma transacción."""

    async def _write_stats(self, session, stats_list):
        if list(stats_list):
            raise OperationalError("UPDATE player_stats", {}, Exception("disco lleno"))


async def test_failed_stats_write_leaves_settlement_unwritten(repository, config, clock, rail, alice, bob):
    service = EscrowService(
        config=config, clock=clock, rail=rail,
        repository=StatsWriteFails(repository.session_factory),
    )
    game_id = service.next_game_id()
    await service.create_game_with_session(alice.identity, STAKE, alice.session(game_id))
    await service.join_game_with_session(game_id, bob.identity, STAKE, bob.session(game_id))

    with pytest.raises(PersistenceFailed):
        await service.end_game(game_id, bob.identity, alice.identity)

    assert service.get_game(game_id).status == GameStatus.ACTIVE
    assert rail.balance_of(config.escrow_account) == STAKE * 2

    restored = EscrowService(config=config, clock=clock, repository=repository)
    await restored.restore()
    game = restored.get_game(game_id)
    assert game.status == GameStatus.ACTIVE
    assert (game.balance_a, game.balance_b) == (STAKE, STAKE)
    assert game.winner is None
    assert await repository.load_stats() == []


async def test_cancelled_game_is_persisted(service, repository, clock, alice):
    game_id = await service.create_game(alice.identity, STAKE)
    clock.advance(300)
    await service.cancel_game(game_id, alice.identity)

    games = await repository.load_games()

    assert games[0].status == GameStatus.CANCELLED
    assert games[0].escrow_a == Decimal("0")


async def test_game_and_stats_can_be_stored_on_their_own(repository, config, clock):
    registry = GameRegistry(config, clock)
    game = registry.get_game(registry.create_game("0xa", STAKE))
    await repository.store_game(game, {"c-1"})
    await repository.store_stats([PlayerStatistics(player="0xa", games_played=2, game_history=[7, 9])])

    assert [g.id for g in await repository.load_games()] == [game.id]
    assert await repository.load_processed() == {game.id: {"c-1"}}
    (stats,) = await repository.load_stats()
    assert (stats.player, stats.games_played, stats.game_history) == ("0xa", 2, [7, 9])
