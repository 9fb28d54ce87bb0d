"""
=============================================================================
MINICHESS - Servicio de Escrow
=============================================================================
Fachada async y único punto de mutación pública del escrow.

Cada transición:
1. Se serializa por partida (un asyncio.Lock por id; la asignación de ids
   tiene su propio lock)
2. Toma un snapshot de la partida, sus capturas procesadas y las
   estadísticas de ambos jugadores
3. Ejecuta validaciones + mutación + movimiento de valor en el rail
4. Persiste (si hay repositorio)
5. Ante cualquier excepción restaura el snapshot, revierte en el rail los
   lotes ya ejecutados y relanza
6. Publica el evento solo tras confirmar
=============================================================================
"""

import asyncio
import copy
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .authorization import AuthorizationVerifier, SignatureOracle
from .config import EscrowConfig
from .errors import GameNotActive, NotAPlayer, ValueTransferFailed
from .ledger import ZERO, Clock, EndReason, Game, GameRegistry, GameStatus, normalize_identity
from .settlement import CaptureSettlementEngine, parse_piece_type
from .statistics import PlayerStatistics, StatisticsAggregator
from .timeouts import SessionTimeoutPolicy
from .value_rail import InMemoryRail, Transfer, ValueTransferRail


# =============================================================================
# EVENTOS
# =============================================================================

@dataclass
class EscrowEvent:
    """Evento emitido tras una transición confirmada."""
    name: str
    game_id: int
    payload: Dict[str, Any]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.name,
            "game_id": self.game_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[EscrowEvent], Awaitable[None]]


@dataclass
class _Snapshot:
    """Estado previo a una transición (game=None: partida recién creada)."""
    game_id: int
    game: Optional[Game]
    processed: Optional[Set[str]]
    stats: Dict[str, Optional[PlayerStatistics]]
    rail_batches: List[Tuple[str, List[Transfer]]] = field(default_factory=list)
    stats_touched: bool = False


def _as_reason(reason) -> EndReason:
    if isinstance(reason, EndReason):
        return reason
    return EndReason(str(reason).strip().upper())


class EscrowService:
    """
    Orquesta registro, verificador, motor de capturas, política de tiempos,
    estadísticas, rail de valor y persistencia.
    """

    def __init__(
        self,
        config: Optional[EscrowConfig] = None,
        clock: Clock = time.time,
        oracle: Optional[SignatureOracle] = None,
        rail: Optional[ValueTransferRail] = None,
        repository=None
    ):
        self.config = config or EscrowConfig()
        self.clock = clock
        self.registry = GameRegistry(self.config, clock)
        self.verifier = AuthorizationVerifier(self.config, oracle)
        self.engine = CaptureSettlementEngine(self.config, clock)
        self.policy = SessionTimeoutPolicy(self.config, clock)
        self.statistics = StatisticsAggregator()
        self.rail = rail if rail is not None else InMemoryRail(clock)
        self.repository = repository

        self._game_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._allocation_lock = asyncio.Lock()
        self._subscribers: List[Subscriber] = []

    # =========================================================================
    # SUSCRIPTORES
    # =========================================================================

    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def _publish(self, name: str, game_id: int, payload: Dict[str, Any]):
        event = EscrowEvent(name=name, game_id=game_id, payload=payload, timestamp=self.clock())
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                # La transición ya está confirmada
                print(f"[ESCROW] Suscriptor falló en '{name}' (partida {game_id}): {e}")

    # =========================================================================
    # TRANSACCIONES
    # =========================================================================

    def _lock_for(self, game_id: int) -> asyncio.Lock:
        game = self.registry.require(game_id)
        if game.status.is_terminal:
            # Una partida terminal solo rechaza: no se registra un lock nuevo
            return self._game_locks.get(game_id) or asyncio.Lock()
        return self._game_locks[game_id]

    def _release_lock(self, game_id: int):
        """Descarta el lock de una partida que llegó a FINISHED o CANCELLED."""
        game = self.registry.games.get(game_id)
        if game is not None and game.status.is_terminal:
            self._game_locks.pop(game_id, None)

    def _take_snapshot(self, game_id: int) -> _Snapshot:
        game = self.registry.games.get(game_id)
        if game is None:
            return _Snapshot(game_id=game_id, game=None, processed=None, stats={})

        players = [game.player_a] + ([game.player_b] if game.player_b else [])
        captures = self.verifier.processed.get(game_id)
        return _Snapshot(
            game_id=game_id,
            game=copy.deepcopy(game),
            processed=captures.ids() if captures is not None else None,
            stats={
                player: copy.deepcopy(self.statistics.players.get(player))
                for player in players
            },
        )

    def _restore_snapshot(self, snapshot: _Snapshot):
        if snapshot.game is None:
            self.registry.discard(snapshot.game_id)
            self.verifier.processed.pop(snapshot.game_id, None)
            return

        self.registry.restore(snapshot.game)
        if snapshot.processed is None:
            self.verifier.processed.pop(snapshot.game_id, None)
        else:
            self.verifier.restore_processed(snapshot.game_id, snapshot.processed)
        for player, stats in snapshot.stats.items():
            if stats is None:
                self.statistics.forget(player)
            else:
                self.statistics.restore(stats)

    async def _compensate(self, snapshot: _Snapshot):
        """Revierte en el rail los lotes ya ejecutados, del último al primero."""
        for memo, batch in reversed(snapshot.rail_batches):
            reverse = [
                Transfer(from_identity=t.to_identity, to_identity=t.from_identity, amount=t.amount)
                for t in reversed(batch)
            ]
            try:
                await self.rail.execute(reverse, memo=f"compensate: {memo}")
            except ValueTransferFailed as e:
                print(
                    f"[ESCROW] CRITICAL: no se pudo compensar '{memo}' "
                    f"en la partida {snapshot.game_id}: {e}"
                )

    async def _persist(self, snapshot: _Snapshot):
        if self.repository is None:
            return
        game = self.registry.require(snapshot.game_id)
        stats = []
        if snapshot.stats_touched:
            players = [game.player_a, game.player_b]
            stats = [self.statistics.players[p] for p in players if p in self.statistics.players]
        await self.repository.store_transition(game, self.verifier.processed_ids(game.id), stats)

    @asynccontextmanager
    async def _transition(self, game_id: int):
        snapshot = self._take_snapshot(game_id)
        try:
            yield snapshot
            await self._persist(snapshot)
        except Exception:
            self._restore_snapshot(snapshot)
            await self._compensate(snapshot)
            raise

    async def _move_value(self, snapshot: _Snapshot, transfers: List[Transfer], memo: str) -> List[str]:
        """Ejecuta un lote en el rail; los montos cero se omiten."""
        batch = [t for t in transfers if t.amount > 0]
        if not batch:
            return []
        references = await self.rail.execute(batch, memo=memo)
        snapshot.rail_batches.append((memo, batch))
        return references

    # =========================================================================
    # CREAR / UNIRSE
    # =========================================================================

    async def create_game(self, creator: str, deposit_amount) -> int:
        """Crea una partida depositando el escrow del creador."""
        return await self._create(creator, deposit_amount, signature=None)

    async def create_game_with_session(self, creator: str, deposit_amount, signature: str) -> int:
        """
        Crea la partida y autoriza la sesión del creador en un solo paso.
        La firma cubre el id que recibirá la partida (ver next_game_id).
        """
        return await self._create(creator, deposit_amount, signature=signature)

    async def _create(self, creator: str, deposit_amount, signature: Optional[str]) -> int:
        creator = normalize_identity(creator)
        async with self._allocation_lock:
            game_id = self.registry.peek_next_id()
            async with self._game_locks[game_id]:
                async with self._transition(game_id) as tx:
                    self.registry.create_game(creator, deposit_amount)
                    game = self.registry.require(game_id)
                    if signature is not None:
                        self.verifier.require_session_authorization(game, creator, signature, record=True)
                    await self._move_value(
                        tx,
                        [Transfer(creator, self.config.escrow_account, game.escrow_a)],
                        memo=f"deposit game {game_id} creator",
                    )

                print(f"[ESCROW] Partida {game_id} creada por {creator} ({game.escrow_a})")
                await self._publish("game_created", game_id, {
                    "creator": creator,
                    "escrow": str(game.escrow_a),
                    "session_authorized": signature is not None,
                })
        return game_id

    async def join_game(self, game_id: int, joiner: str, deposit_amount):
        await self._join(game_id, joiner, deposit_amount, signature=None)

    async def join_game_with_session(self, game_id: int, joiner: str, deposit_amount, signature: str):
        await self._join(game_id, joiner, deposit_amount, signature=signature)

    async def _join(self, game_id: int, joiner: str, deposit_amount, signature: Optional[str]):
        joiner = normalize_identity(joiner)
        async with self._lock_for(game_id):
            async with self._transition(game_id) as tx:
                game = self.registry.check_join(game_id, joiner, deposit_amount)
                if signature is not None:
                    self.verifier.require_session_authorization(game, joiner, signature, record=True)
                self.registry.join_game(game_id, joiner, deposit_amount)
                await self._move_value(
                    tx,
                    [Transfer(joiner, self.config.escrow_account, game.escrow_b)],
                    memo=f"deposit game {game_id} opponent",
                )

            print(f"[ESCROW] {joiner} se unió a la partida {game_id}: ACTIVE")
            await self._publish("player_joined", game_id, {
                "player": joiner,
                "escrow": str(game.escrow_b),
                "session_authorized": signature is not None,
            })

    # =========================================================================
    # SESIÓN Y CAPTURAS
    # =========================================================================

    async def authorize_session(self, game_id: int, player: str, signature: str):
        """Registra la autorización de sesión de un jugador ya inscrito."""
        player = normalize_identity(player)
        async with self._lock_for(game_id):
            async with self._transition(game_id):
                game = self.registry.require(game_id)
                if game.status.is_terminal:
                    raise GameNotActive(
                        f"La partida {game_id} ya terminó ({game.status.name})",
                        game_id=game_id,
                    )
                if not game.is_player(player):
                    raise NotAPlayer(f"{player} no juega la partida {game_id}", game_id=game_id)
                self.verifier.require_session_authorization(game, player, signature, record=True)

            print(f"[ESCROW] Sesión autorizada: {player} en partida {game_id}")
            await self._publish("session_authorized", game_id, {"player": player})

    async def capture_piece(
        self,
        game_id: int,
        captor: str,
        piece_type,
        capture_id: str,
        signature: str
    ) -> Decimal:
        """
        Aplica una captura firmada. El capture id solo se consume si la
        captura completa tiene éxito.
        """
        captor = normalize_identity(captor)
        async with self._lock_for(game_id):
            async with self._transition(game_id):
                game = self.registry.require(game_id)
                self.engine.check_capture(game, captor, piece_type)
                piece = parse_piece_type(piece_type)
                self.verifier.require_capture_authorization(
                    game, captor, int(piece), capture_id, signature
                )
                value = self.engine.apply_capture(game, captor, piece)
                opponent = game.opponent_of(captor)

            print(f"[CAPTURE] Partida {game_id}: {captor} capturó {piece.name} (+{value})")
            await self._publish("piece_captured", game_id, {
                "captor": captor,
                "opponent": opponent,
                "piece_type": int(piece),
                "piece": piece.name,
                "value": str(value),
                "capture_id": capture_id,
                "balance_a": str(game.balance_a),
                "balance_b": str(game.balance_b),
            })
        return value

    # =========================================================================
    # LIQUIDACIÓN
    # =========================================================================

    async def _settle(
        self,
        snapshot: _Snapshot,
        game: Game,
        winner: str,
        reason: EndReason
    ) -> Tuple[Decimal, Decimal]:
        payout_a, payout_b = self.engine.settle(game, winner, reason)
        self.statistics.record_settlement(game, payout_a, payout_b)
        snapshot.stats_touched = True
        await self._move_value(
            snapshot,
            [
                Transfer(self.config.escrow_account, game.player_a, payout_a),
                Transfer(self.config.escrow_account, game.player_b, payout_b),
            ],
            memo=f"payout game {game.id}",
        )
        return payout_a, payout_b

    async def end_game(
        self,
        game_id: int,
        caller: str,
        winner: str,
        reason=EndReason.CHECKMATE
    ) -> Tuple[Decimal, Decimal]:
        """Cierra la partida y paga los balances actuales."""
        caller, winner = normalize_identity(caller), normalize_identity(winner)
        reason = _as_reason(reason)
        async with self._lock_for(game_id):
            async with self._transition(game_id) as tx:
                game = self.registry.require(game_id)
                if game.status != GameStatus.ACTIVE:
                    raise GameNotActive(
                        f"La partida {game_id} no está activa ({game.status.name})",
                        game_id=game_id,
                    )
                if not game.is_player(caller):
                    raise NotAPlayer(f"{caller} no juega la partida {game_id}", game_id=game_id)
                payout_a, payout_b = await self._settle(tx, game, winner, reason)

            print(
                f"[SETTLEMENT] Partida {game_id} terminada ({reason.value}): "
                f"ganador {winner}, pagos {payout_a} / {payout_b}"
            )
            await self._publish("game_ended", game_id, {
                "winner": winner,
                "reason": reason.value,
                "payout_a": str(payout_a),
                "payout_b": str(payout_b),
            })
        self._release_lock(game_id)
        return payout_a, payout_b

    async def claim_timeout(self, game_id: int, claimant: str) -> Tuple[Decimal, Decimal]:
        """El reclamante gana si el rival agotó su tiempo de movimiento."""
        claimant = normalize_identity(claimant)
        async with self._lock_for(game_id):
            async with self._transition(game_id) as tx:
                game = self.registry.require(game_id)
                self.policy.check_timeout(game, claimant)
                payout_a, payout_b = await self._settle(tx, game, claimant, EndReason.TIMEOUT)

            print(f"[SETTLEMENT] Timeout en partida {game_id}: gana {claimant}")
            await self._publish("timeout_claimed", game_id, {
                "winner": claimant,
                "reason": EndReason.TIMEOUT.value,
                "payout_a": str(payout_a),
                "payout_b": str(payout_b),
            })
        self._release_lock(game_id)
        return payout_a, payout_b

    async def cancel_game(self, game_id: int, requester: str) -> Decimal:
        """Cancela una partida sin rival y reembolsa al creador."""
        requester = normalize_identity(requester)
        async with self._lock_for(game_id):
            async with self._transition(game_id) as tx:
                game = self.registry.require(game_id)
                refund = self.policy.cancel(game, requester)
                await self._move_value(
                    tx,
                    [Transfer(self.config.escrow_account, requester, refund)],
                    memo=f"refund game {game_id}",
                )

            print(f"[ESCROW] Partida {game_id} cancelada: reembolso {refund} a {requester}")
            await self._publish("game_cancelled", game_id, {
                "creator": requester,
                "refund": str(refund),
            })
        self._release_lock(game_id)
        return refund

    # =========================================================================
    # LECTURAS
    # =========================================================================

    def get_game(self, game_id: int) -> Game:
        return self.registry.get_game(game_id)

    def list_games(self, status: Optional[GameStatus] = None) -> List[Game]:
        return self.registry.list_games(status)

    def next_game_id(self) -> int:
        return self.registry.peek_next_id()

    def get_player_stats(self, player: str) -> PlayerStatistics:
        return self.statistics.get_player_stats(normalize_identity(player))

    def get_player_game_history(self, player: str, limit: int = 10, offset: int = 0) -> List[int]:
        return self.statistics.get_player_game_history(normalize_identity(player), limit, offset)

    def get_player_game_count(self, player: str) -> int:
        return self.statistics.get_player_game_count(normalize_identity(player))

    def leaderboard(self, sort_by: str = "win_rate", limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.statistics.leaderboard(sort_by, limit)

    def time_windows(self, game_id: int) -> Dict[str, Any]:
        """Segundos restantes para reclamar timeout o cancelar."""
        game = self.registry.require(game_id)
        return {
            "game_id": game_id,
            "status": game.status.name,
            "move_timeout": self.config.move_timeout,
            "creation_grace_period": self.config.creation_grace_period,
            "seconds_until_timeout": (
                self.policy.seconds_until_timeout(game)
                if game.status == GameStatus.ACTIVE else None
            ),
            "seconds_until_cancellable": (
                self.policy.seconds_until_cancellable(game)
                if game.status == GameStatus.WAITING else None
            ),
        }

    def processed_captures(self, game_id: int) -> Set[str]:
        self.registry.require(game_id)
        return self.verifier.processed_ids(game_id)

    def escrow_held(self) -> Decimal:
        """Suma de escrow comprometido en partidas no terminales."""
        return sum(
            (g.total_escrow for g in self.registry.games.values() if not g.status.is_terminal),
            ZERO,
        )

    # =========================================================================
    # ARRANQUE
    # =========================================================================

    async def restore(self, repository=None) -> int:
        """Carga partidas, capturas y estadísticas desde el repositorio."""
        repository = repository or self.repository
        if repository is None:
            return 0

        games = await repository.load_games()
        for game in games:
            self.registry.restore(game)
        for game_id, capture_ids in (await repository.load_processed()).items():
            self.verifier.restore_processed(game_id, capture_ids)
        for stats in await repository.load_stats():
            self.statistics.restore(stats)

        print(f"[ESCROW] Estado restaurado: {len(games)} partidas")
        return len(games)
