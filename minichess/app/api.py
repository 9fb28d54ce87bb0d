"""
=============================================================================
MINICHESS - Endpoints REST del Escrow
=============================================================================
API para clientes que no pasan por el relay:
- Partidas: crear, unirse, autorizar sesión, capturar, terminar, timeout,
  cancelar y consultas
- Movimientos: log de jugadas por partida (python-chess)
- Jugadores: estadísticas, historial y leaderboard

Los errores del escrow se traducen a HTTP en main.py.
=============================================================================
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .chess_bridge import MoveLog
from .escrow_service import EscrowService
from .ledger import EndReason, GameStatus
from .statistics import LEADERBOARD_CRITERIA


router = APIRouter(tags=["Escrow"])


def get_service(request: Request) -> EscrowService:
    return request.app.state.escrow


def get_move_log(request: Request) -> MoveLog:
    return request.app.state.move_log


# =============================================================================
# SCHEMAS
# =============================================================================

class CreateGameRequest(BaseModel):
    creator: str = Field(..., min_length=1)
    deposit: Decimal
    signature: Optional[str] = None


class JoinGameRequest(BaseModel):
    player: str = Field(..., min_length=1)
    deposit: Decimal
    signature: Optional[str] = None


class AuthorizeSessionRequest(BaseModel):
    player: str = Field(..., min_length=1)
    signature: str


class CaptureRequest(BaseModel):
    """Captura firmada. piece_type: 1=peón ... 5=dama (o su nombre)."""
    captor: str = Field(..., min_length=1)
    piece_type: str
    capture_id: str = Field(..., min_length=1, max_length=128)
    signature: str


class EndGameRequest(BaseModel):
    caller: str = Field(..., min_length=1)
    winner: str = Field(..., min_length=1)
    reason: EndReason = EndReason.CHECKMATE


class PlayerActionRequest(BaseModel):
    player: str = Field(..., min_length=1)


class MoveRequest(BaseModel):
    from_square: str = Field(..., alias="from", min_length=2, max_length=2)
    to_square: str = Field(..., alias="to", min_length=2, max_length=2)
    promotion: Optional[str] = Field(None, max_length=1)
    player: str = Field(..., min_length=1)


# =============================================================================
# PARTIDAS
# =============================================================================

@router.post("/games")
async def create_game(body: CreateGameRequest, service: EscrowService = Depends(get_service)):
    """Crea una partida; con firma, también autoriza la sesión del creador."""
    if body.signature:
        game_id = await service.create_game_with_session(body.creator, body.deposit, body.signature)
    else:
        game_id = await service.create_game(body.creator, body.deposit)
    return service.get_game(game_id).to_dict()


@router.get("/games")
async def list_games(
    status: Optional[str] = Query(None, description="WAITING, ACTIVE, FINISHED o CANCELLED"),
    service: EscrowService = Depends(get_service)
):
    wanted = None
    if status:
        try:
            wanted = GameStatus[status.upper()]
        except KeyError:
            raise HTTPException(status_code=400, detail=f"Estado desconocido: {status}")
    games = service.list_games(wanted)
    return {"games": [g.to_dict() for g in games], "count": len(games)}


@router.get("/games/next-id")
async def next_game_id(service: EscrowService = Depends(get_service)):
    """Id que recibirá la próxima partida (lo firma createGameWithSession)."""
    return {"next_game_id": service.next_game_id()}


@router.get("/games/{game_id}")
async def get_game(game_id: int, service: EscrowService = Depends(get_service)):
    return service.get_game(game_id).to_dict()


@router.get("/games/{game_id}/time-windows")
async def time_windows(game_id: int, service: EscrowService = Depends(get_service)):
    return service.time_windows(game_id)


@router.post("/games/{game_id}/join")
async def join_game(game_id: int, body: JoinGameRequest, service: EscrowService = Depends(get_service)):
    if body.signature:
        await service.join_game_with_session(game_id, body.player, body.deposit, body.signature)
    else:
        await service.join_game(game_id, body.player, body.deposit)
    return service.get_game(game_id).to_dict()


@router.post("/games/{game_id}/authorize")
async def authorize_session(
    game_id: int,
    body: AuthorizeSessionRequest,
    service: EscrowService = Depends(get_service)
):
    await service.authorize_session(game_id, body.player, body.signature)
    return {"success": True, "game_id": game_id, "player": body.player}


@router.post("/games/{game_id}/captures")
async def capture_piece(game_id: int, body: CaptureRequest, service: EscrowService = Depends(get_service)):
    value = await service.capture_piece(
        game_id, body.captor, body.piece_type, body.capture_id, body.signature
    )
    game = service.get_game(game_id)
    return {
        "success": True,
        "value": str(value),
        "balance_a": str(game.balance_a),
        "balance_b": str(game.balance_b),
    }


@router.post("/games/{game_id}/end")
async def end_game(game_id: int, body: EndGameRequest, service: EscrowService = Depends(get_service)):
    payout_a, payout_b = await service.end_game(game_id, body.caller, body.winner, body.reason)
    return {
        "success": True,
        "winner": body.winner,
        "reason": body.reason.value,
        "payout_a": str(payout_a),
        "payout_b": str(payout_b),
    }


@router.post("/games/{game_id}/timeout")
async def claim_timeout(game_id: int, body: PlayerActionRequest, service: EscrowService = Depends(get_service)):
    payout_a, payout_b = await service.claim_timeout(game_id, body.player)
    return {
        "success": True,
        "winner": body.player,
        "payout_a": str(payout_a),
        "payout_b": str(payout_b),
    }


@router.post("/games/{game_id}/cancel")
async def cancel_game(game_id: int, body: PlayerActionRequest, service: EscrowService = Depends(get_service)):
    refund = await service.cancel_game(game_id, body.player)
    return {"success": True, "refund": str(refund)}


# =============================================================================
# MOVIMIENTOS
# =============================================================================

@router.get("/games/{game_id}/moves")
async def get_moves(game_id: int, moves: MoveLog = Depends(get_move_log)):
    records = moves.moves(game_id)
    return {
        "game_id": game_id,
        "moves": [m.to_dict() for m in records],
        "count": len(records),
        "last_update": records[-1].timestamp if records else None,
    }


@router.post("/games/{game_id}/moves")
async def submit_move(
    game_id: int,
    body: MoveRequest,
    service: EscrowService = Depends(get_service),
    moves: MoveLog = Depends(get_move_log)
):
    """
    Registra una jugada legal. Si captura, el cliente debe firmar la
    captura y enviarla a /captures; si termina la partida, a /end.
    """
    game = service.get_game(game_id)
    result = moves.push(game, body.from_square, body.to_square, body.player, body.promotion)
    print(
        f"[GAME {game_id}] Jugada {result.move.move_number}: "
        f"{result.move.from_square} -> {result.move.to_square} por {body.player[:8]}..."
    )
    payload = result.to_dict()
    payload["total_moves"] = result.move.move_number
    return payload


@router.delete("/games/{game_id}/moves")
async def clear_moves(game_id: int, moves: MoveLog = Depends(get_move_log)):
    cleared = moves.clear(game_id)
    return {"success": True, "cleared": cleared, "message": f"Movimientos borrados para la partida {game_id}"}


# =============================================================================
# JUGADORES
# =============================================================================

@router.get("/players/{player}/stats")
async def player_stats(player: str, service: EscrowService = Depends(get_service)):
    return service.get_player_stats(player).to_dict()


@router.get("/players/{player}/history")
async def player_history(
    player: str,
    limit: int = Query(10, ge=0, le=100),
    offset: int = Query(0, ge=0),
    service: EscrowService = Depends(get_service)
):
    return {
        "player": player,
        "games": service.get_player_game_history(player, limit, offset),
        "total": service.get_player_game_count(player),
        "limit": limit,
        "offset": offset,
    }


@router.get("/leaderboard")
async def leaderboard(
    sort_by: str = Query("win_rate", pattern="^(" + "|".join(LEADERBOARD_CRITERIA) + ")$"),
    limit: int = Query(50, ge=1, le=500),
    service: EscrowService = Depends(get_service)
):
    return {"sort_by": sort_by, "players": service.leaderboard(sort_by, limit)}
