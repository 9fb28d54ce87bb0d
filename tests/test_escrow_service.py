import asyncio
from decimal import Decimal

import pytest

from minichess.app.errors import (
    CaptureReplayed,
    GameNotActive,
    GameNotFound,
    GameNotJoinable,
    GameNotTimedOut,
    GracePeriodActive,
    InsufficientBalance,
    InvalidSignature,
    InvalidWinner,
    NotAPlayer,
    NotCancellable,
    PersistenceFailed,
    PlayerNotAuthorized,
    PreconditionError,
    ValueTransferFailed,
)
from minichess.app.escrow_service import EscrowService
from minichess.app.ledger import EndReason, GameStatus
from minichess.app.settlement import PieceType

from conftest import START_FUNDS, STAKE


# =============================================================================
# ESCENARIOS DE PUNTA A PUNTA
# =============================================================================

async def test_full_game_lifecycle(service, rail, config, alice, bob, capture):
    # 1. Crear
    game_id = await service.create_game_with_session(alice.identity, STAKE, alice.session(1))
    game = service.get_game(game_id)
    assert game.status == GameStatus.WAITING
    assert game.balance_a == Decimal("2.50")
    assert game.balance_b == Decimal("0")

    # 2. Unirse
    await service.join_game_with_session(game_id, bob.identity, STAKE, bob.session(game_id))
    game = service.get_game(game_id)
    assert game.status == GameStatus.ACTIVE
    assert game.balance_b == Decimal("2.50")
    assert rail.balance_of(config.escrow_account) == Decimal("5.00")

    # 3. Captura de peón
    value = await capture(game_id, alice, PieceType.PAWN, "cap-1")
    game = service.get_game(game_id)
    assert value == Decimal("0.05")
    assert (game.balance_a, game.balance_b) == (Decimal("2.55"), Decimal("2.45"))
    assert game.total_balance == Decimal("5.00")

    # 4. Replay del mismo capture id
    with pytest.raises(CaptureReplayed):
        await capture(game_id, alice, PieceType.PAWN, "cap-1")
    game = service.get_game(game_id)
    assert (game.balance_a, game.balance_b) == (Decimal("2.55"), Decimal("2.45"))

    # 5. Fin de partida
    payout_a, payout_b = await service.end_game(game_id, bob.identity, alice.identity, EndReason.CHECKMATE)
    game = service.get_game(game_id)
    assert (payout_a, payout_b) == (Decimal("2.55"), Decimal("2.45"))
    assert game.balance_a == game.balance_b == Decimal("0")
    assert service.get_player_stats(alice.identity).total_earned == Decimal("0.05")
    assert service.get_player_stats(bob.identity).total_lost == Decimal("0.05")
    assert service.get_player_stats(alice.identity).games_played == 1
    assert service.get_player_stats(bob.identity).games_played == 1

    assert rail.balance_of(alice.identity) == START_FUNDS + Decimal("0.05")
    assert rail.balance_of(bob.identity) == START_FUNDS - Decimal("0.05")
    assert rail.balance_of(config.escrow_account) == Decimal("0")


async def test_cancel_after_grace_period_refunds_creator(service, rail, clock, alice):
    game_id = await service.create_game(alice.identity, STAKE)
    clock.advance(120)

    with pytest.raises(GracePeriodActive):
        await service.cancel_game(game_id, alice.identity)
    assert service.get_game(game_id).status == GameStatus.WAITING

    clock.advance(180)
    refund = await service.cancel_game(game_id, alice.identity)

    assert refund == Decimal("2.50")
    assert service.get_game(game_id).status == GameStatus.CANCELLED
    assert rail.balance_of(alice.identity) == START_FUNDS


# =============================================================================
# INVARIANTES
# =============================================================================

async def test_balances_are_conserved_through_captures(service, start_game, capture, alice, bob):
    game_id = await start_game()
    sequence = [
        (alice, PieceType.PAWN), (bob, PieceType.KNIGHT), (alice, PieceType.QUEEN),
        (bob, PieceType.ROOK), (bob, PieceType.PAWN), (alice, PieceType.BISHOP),
    ]

    for index, (captor, piece) in enumerate(sequence):
        await capture(game_id, captor, piece, f"cap-{index}")
        game = service.get_game(game_id)
        assert game.is_conserved()

    assert service.get_game(game_id).balance_a == Decimal("2.75")


async def test_unauthorized_captor_is_rejected(service, alice, bob, capture):
    game_id = await service.create_game(alice.identity, STAKE)
    await service.join_game(game_id, bob.identity, STAKE)

    with pytest.raises(PlayerNotAuthorized):
        await capture(game_id, alice, PieceType.PAWN, "cap-1")

    await service.authorize_session(game_id, alice.identity, alice.session(game_id))
    assert await capture(game_id, alice, PieceType.PAWN, "cap-1") == Decimal("0.05")


async def test_signature_from_another_game_does_not_authorize(service, start_game, alice, bob, carol):
    first = await start_game()
    second = await service.create_game(carol.identity, STAKE)
    await service.join_game(second, bob.identity, STAKE)

    with pytest.raises(InvalidSignature):
        await service.authorize_session(second, bob.identity, bob.session(first))
    with pytest.raises(NotAPlayer):
        await service.authorize_session(second, alice.identity, alice.session(second))
    assert service.get_game(second).authorized_players == set()


async def test_failed_capture_does_not_consume_capture_id(service, start_game, capture, alice, bob):
    game_id = await start_game()
    # Lleva el balance de bob a 0.25
    for index, piece in enumerate([PieceType.QUEEN, PieceType.QUEEN, PieceType.QUEEN,
                                   PieceType.QUEEN, PieceType.ROOK]):
        await capture(game_id, alice, piece, f"drain-{index}")
    assert service.get_game(game_id).balance_b == Decimal("0.25")

    with pytest.raises(InsufficientBalance):
        await capture(game_id, alice, PieceType.QUEEN, "late")
    assert "late" not in service.processed_captures(game_id)

    assert await capture(game_id, alice, PieceType.PAWN, "late") == Decimal("0.05")


async def test_terminal_games_absorb_every_transition(service, start_game, capture, clock, alice, bob, carol):
    game_id = await start_game()
    await service.end_game(game_id, alice.identity, alice.identity)
    clock.advance(10_000)

    attempts = [
        service.join_game(game_id, carol.identity, STAKE),
        capture(game_id, alice, PieceType.PAWN, "after"),
        service.end_game(game_id, alice.identity, bob.identity),
        service.cancel_game(game_id, alice.identity),
        service.claim_timeout(game_id, bob.identity),
        service.authorize_session(game_id, alice.identity, alice.session(game_id)),
    ]
    for attempt in attempts:
        with pytest.raises(PreconditionError):
            await attempt

    game = service.get_game(game_id)
    assert game.status == GameStatus.FINISHED
    assert game.winner == alice.identity


async def test_cancelled_game_cannot_be_joined(service, clock, alice, bob):
    game_id = await service.create_game(alice.identity, STAKE)
    clock.advance(300)
    await service.cancel_game(game_id, alice.identity)

    with pytest.raises(GameNotJoinable):
        await service.join_game(game_id, bob.identity, STAKE)
    with pytest.raises(NotCancellable):
        await service.cancel_game(game_id, alice.identity)


# =============================================================================
# LIQUIDACIÓN Y TIMEOUT
# =============================================================================

async def test_end_game_checks_caller_then_winner(service, start_game, alice, carol):
    game_id = await start_game()

    with pytest.raises(NotAPlayer):
        await service.end_game(game_id, carol.identity, alice.identity)
    with pytest.raises(InvalidWinner):
        await service.end_game(game_id, alice.identity, carol.identity)
    assert service.get_game(game_id).status == GameStatus.ACTIVE


async def test_draw_reason_is_informational(service, start_game, alice, bob):
    game_id = await start_game()

    payouts = await service.end_game(game_id, alice.identity, bob.identity, "draw")

    assert payouts == (Decimal("2.50"), Decimal("2.50"))
    game = service.get_game(game_id)
    assert game.end_reason == EndReason.DRAW
    assert service.get_player_stats(bob.identity).games_won == 1
    assert service.get_player_stats(bob.identity).total_earned == Decimal("0")


async def test_claim_timeout_settles_for_claimant(service, start_game, capture, clock, alice, bob):
    game_id = await start_game()
    await capture(game_id, bob, PieceType.KNIGHT, "cap-1")

    clock.advance(1000)
    with pytest.raises(GameNotTimedOut):
        await service.claim_timeout(game_id, bob.identity)

    clock.advance(800)
    payout_a, payout_b = await service.claim_timeout(game_id, bob.identity)

    game = service.get_game(game_id)
    assert game.winner == bob.identity
    assert game.end_reason == EndReason.TIMEOUT
    assert (payout_a, payout_b) == (Decimal("2.35"), Decimal("2.65"))
    assert service.get_player_stats(bob.identity).total_earned == Decimal("0.15")


async def test_zero_payout_is_skipped_on_the_rail(service, start_game, capture, rail, alice, bob):
    game_id = await start_game()
    drain = [PieceType.QUEEN] * 5
    for index, piece in enumerate(drain):
        await capture(game_id, alice, piece, f"q-{index}")
    assert service.get_game(game_id).balance_b == Decimal("0")

    entries_before = len(rail.entries)
    await service.end_game(game_id, alice.identity, alice.identity)

    payout_entries = rail.entries[entries_before:]
    assert [e.to_identity for e in payout_entries] == [alice.identity]
    assert payout_entries[0].amount == Decimal("5.00")


async def test_history_and_leaderboard_through_service(service, start_game, alice, bob):
    first = await start_game()
    await service.end_game(first, alice.identity, alice.identity)
    second = await start_game(creator=bob, joiner=alice)
    await service.end_game(second, bob.identity, alice.identity)

    assert service.get_player_game_history(alice.identity) == [second, first]
    assert service.get_player_game_count(bob.identity) == 2
    assert service.leaderboard()[0]["player"] == alice.identity


# =============================================================================
# ATOMICIDAD
# =============================================================================

async def test_rail_failure_rolls_back_creation(service, rail, alice):
    rail.frozen = True

    with pytest.raises(ValueTransferFailed):
        await service.create_game(alice.identity, STAKE)

    assert service.next_game_id() == 1
    with pytest.raises(GameNotFound):
        service.get_game(1)


async def test_rail_failure_rolls_back_settlement(service, start_game, capture, rail, alice, bob):
    game_id = await start_game()
    await capture(game_id, alice, PieceType.ROOK, "cap-1")
    rail.frozen = True

    with pytest.raises(ValueTransferFailed):
        await service.end_game(game_id, alice.identity, alice.identity)

    game = service.get_game(game_id)
    assert game.status == GameStatus.ACTIVE
    assert (game.balance_a, game.balance_b) == (Decimal("2.75"), Decimal("2.25"))
    assert service.get_player_stats(alice.identity).games_played == 0
    assert "cap-1" in service.processed_captures(game_id)

    rail.frozen = False
    assert await service.end_game(game_id, alice.identity, alice.identity) == (Decimal("2.75"), Decimal("2.25"))


async def test_underfunded_joiner_leaves_game_waiting(config, clock, alice, bob):
    from minichess.app.value_rail import InMemoryRail

    rail = InMemoryRail(clock)
    rail.credit(alice.identity, STAKE)
    service = EscrowService(config=config, clock=clock, rail=rail)
    game_id = await service.create_game(alice.identity, STAKE)

    with pytest.raises(ValueTransferFailed):
        await service.join_game_with_session(game_id, bob.identity, STAKE, bob.session(game_id))

    game = service.get_game(game_id)
    assert game.status == GameStatus.WAITING
    assert game.player_b is None
    assert game.authorized_players == set()


class FailingRepository:
    """Repositorio que falla al guardar partidas."""

    def __init__(self):
        self.calls = 0

    async def store_transition(self, game, processed_ids, stats_list=()):
        self.calls += 1
        raise PersistenceFailed("disco lleno", game_id=game.id)


async def test_persistence_failure_compensates_rail(config, clock, rail, alice):
    repository = FailingRepository()
    service = EscrowService(config=config, clock=clock, rail=rail, repository=repository)

    with pytest.raises(PersistenceFailed):
        await service.create_game(alice.identity, STAKE)

    assert repository.calls == 1
    assert service.next_game_id() == 1
    assert rail.balance_of(alice.identity) == START_FUNDS
    assert rail.balance_of(config.escrow_account) == Decimal("0")


# =============================================================================
# CONCURRENCIA Y EVENTOS
# =============================================================================

async def test_concurrent_creations_get_distinct_ids(service, alice, bob, carol):
    ids = await asyncio.gather(*[
        service.create_game(player.identity, STAKE) for player in (alice, bob, carol)
    ])

    assert sorted(ids) == [1, 2, 3]


async def test_concurrent_replays_apply_once(service, start_game, alice):
    game_id = await start_game()
    signature = alice.capture(game_id, int(PieceType.PAWN), "dup")

    results = await asyncio.gather(
        *[service.capture_piece(game_id, alice.identity, PieceType.PAWN, "dup", signature) for _ in range(3)],
        return_exceptions=True,
    )

    assert sum(1 for r in results if r == Decimal("0.05")) == 1
    assert sum(1 for r in results if isinstance(r, CaptureReplayed)) == 2
    assert service.get_game(game_id).balance_a == Decimal("2.55")


async def test_events_are_published_after_commit(service, start_game, capture, alice):
    events = []

    async def collect(event):
        events.append(event)

    service.subscribe(collect)
    game_id = await start_game()
    await capture(game_id, alice, PieceType.PAWN, "cap-1")
    with pytest.raises(CaptureReplayed):
        await capture(game_id, alice, PieceType.PAWN, "cap-1")
    await service.end_game(game_id, alice.identity, alice.identity)

    assert [e.name for e in events] == ["game_created", "player_joined", "piece_captured", "game_ended"]
    assert events[2].payload["value"] == "0.05"
    assert events[3].payload["payout_a"] == "2.55"


async def test_failing_subscriber_does_not_undo_transition(service, alice):
    async def broken(event):
        raise RuntimeError("socket caído")

    service.subscribe(broken)
    game_id = await service.create_game(alice.identity, STAKE)

    assert service.get_game(game_id).status == GameStatus.WAITING


async def test_time_windows(service, start_game, clock, alice):
    waiting = await service.create_game(alice.identity, STAKE)
    clock.advance(100)
    active = await start_game()
    clock.advance(30)

    assert service.time_windows(waiting)["seconds_until_cancellable"] == 170.0
    assert service.time_windows(active)["seconds_until_timeout"] == 1770.0
    assert service.time_windows(active)["seconds_until_cancellable"] is None


async def test_unknown_game_is_not_found(service, alice):
    with pytest.raises(GameNotFound):
        await service.join_game(42, alice.identity, STAKE)
    with pytest.raises(GameNotFound):
        await service.end_game(42, alice.identity, alice.identity)


# =============================================================================
# IDENTIDADES Y RECURSOS
# =============================================================================

def shouted(player):
    """Misma identidad con el hex en mayúsculas."""
    return "0x" + player.identity[2:].upper()


async def test_identity_case_is_normalized(service, rail, alice, bob):
    game_id = service.next_game_id()
    await service.create_game_with_session(shouted(alice), STAKE, alice.session(game_id))
    await service.join_game_with_session(game_id, shouted(bob), STAKE, bob.session(game_id))

    game = service.get_game(game_id)
    assert (game.player_a, game.player_b) == (alice.identity, bob.identity)
    assert game.authorized_players == {alice.identity, bob.identity}

    signature = alice.capture(game_id, int(PieceType.PAWN), "p1")
    await service.capture_piece(game_id, shouted(alice), PieceType.PAWN, "p1", signature)
    await service.end_game(game_id, shouted(bob), shouted(alice))

    assert service.get_game(game_id).winner == alice.identity
    assert service.get_player_stats(shouted(alice)).games_won == 1
    assert rail.balance_of(alice.identity) == START_FUNDS + Decimal("0.05")


async def test_locks_are_dropped_for_terminal_games(service, start_game, capture, clock, alice, bob):
    finished = await start_game()
    await capture(finished, alice, PieceType.PAWN, "p1")
    cancelled = await service.create_game(alice.identity, STAKE)
    assert {finished, cancelled} <= set(service._game_locks)

    await service.end_game(finished, alice.identity, bob.identity)
    clock.advance(300)
    await service.cancel_game(cancelled, alice.identity)

    assert finished not in service._game_locks
    assert cancelled not in service._game_locks

    with pytest.raises(GameNotActive):
        await service.end_game(finished, alice.identity, bob.identity)
    assert finished not in service._game_locks
    assert service.processed_captures(finished) == {"p1"}
