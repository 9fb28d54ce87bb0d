"""
=============================================================================
MINICHESS - Manejador de WebSockets (Socket.IO)
=============================================================================
Tiempo real para las partidas:
- Los clientes se suscriben a la sala game_<id>
- Cada evento confirmado del escrow se reenvía a su sala
- submit_move pasa la jugada por el MoveLog y, si captura, indica al
  cliente qué mensaje de captura debe firmar
=============================================================================
"""

import time
from typing import Any, Dict, Optional

import socketio

from .authorization import capture_message
from .chess_bridge import MoveLog
from .errors import EscrowError, error_payload
from .escrow_service import EscrowEvent, EscrowService


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    HEARTBEAT_INTERVAL = 3           # Segundos entre heartbeats
    HEARTBEAT_TIMEOUT = 10           # Timeout para considerar desconexión


def room_name(game_id: int) -> str:
    return f"game_{game_id}"


class EscrowSocketBridge:
    """Conecta el servicio de escrow y el log de jugadas con Socket.IO."""

    def __init__(self):
        self.service: Optional[EscrowService] = None
        self.move_log: Optional[MoveLog] = None
        self.subscriptions: Dict[str, set] = {}  # sid -> game ids

    def attach(self, service: EscrowService, move_log: MoveLog):
        if self.service is not None:
            self.service.unsubscribe(forward_event)
        self.service = service
        self.move_log = move_log
        service.subscribe(forward_event)

    def detach(self):
        if self.service is not None:
            self.service.unsubscribe(forward_event)
        self.service = None
        self.move_log = None
        self.subscriptions.clear()


# =============================================================================
# SERVIDOR SOCKET.IO
# =============================================================================

sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*',
    ping_timeout=SocketConfig.HEARTBEAT_TIMEOUT,
    ping_interval=SocketConfig.HEARTBEAT_INTERVAL
)

# Instancia global del puente
bridge = EscrowSocketBridge()


async def forward_event(event: EscrowEvent):
    """Suscriptor del escrow: reenvía el evento a la sala de la partida."""
    await sio.emit(event.name, event.to_dict(), room=room_name(event.game_id))


def _game_id(data: Any) -> Optional[int]:
    if not isinstance(data, dict):
        return None
    try:
        return int(data.get('game_id'))
    except (TypeError, ValueError):
        return None


# =============================================================================
# HANDLERS DE EVENTOS
# =============================================================================

@sio.event
async def connect(sid: str, environ: dict, auth: dict = None):
    print(f"[WS] Nueva conexión: {sid}")
    bridge.subscriptions[sid] = set()
    await sio.emit('connected', {
        'sid': sid,
        'message': 'Conectado a MiniChess',
        'server_time': time.time()
    }, room=sid)


@sio.event
async def disconnect(sid: str):
    print(f"[WS] Desconexión: {sid}")
    bridge.subscriptions.pop(sid, None)


@sio.event
async def subscribe_game(sid: str, data: dict):
    """
    data = {'game_id': int}
    Responde con el estado actual de la partida.
    """
    game_id = _game_id(data)
    if game_id is None or bridge.service is None:
        await sio.emit('error', {'message': 'game_id inválido'}, room=sid)
        return

    try:
        game = bridge.service.get_game(game_id)
    except EscrowError as e:
        await sio.emit('error', e.to_dict(), room=sid)
        return

    await sio.enter_room(sid, room_name(game_id))
    bridge.subscriptions.setdefault(sid, set()).add(game_id)
    await sio.emit('game_state', {
        'game': game.to_dict(),
        'fen': bridge.move_log.fen(game_id) if bridge.move_log else None,
    }, room=sid)


@sio.event
async def unsubscribe_game(sid: str, data: dict):
    game_id = _game_id(data)
    if game_id is None:
        return
    await sio.leave_room(sid, room_name(game_id))
    bridge.subscriptions.get(sid, set()).discard(game_id)


@sio.event
async def submit_move(sid: str, data: dict):
    """
    data = {'game_id': int, 'from': 'e2', 'to': 'e4', 'promotion': None, 'player': str}
    """
    game_id = _game_id(data)
    if game_id is None or bridge.service is None or bridge.move_log is None:
        await sio.emit('error', {'message': 'game_id inválido'}, room=sid)
        return

    try:
        game = bridge.service.get_game(game_id)
        result = bridge.move_log.push(
            game,
            str(data.get('from', '')),
            str(data.get('to', '')),
            str(data.get('player', '')),
            data.get('promotion'),
        )
    except EscrowError as e:
        await sio.emit('error', error_payload(e), room=sid)
        return

    await sio.emit('move_made', {
        'game_id': game_id,
        **result.to_dict(),
    }, room=room_name(game_id))

    if result.capture is not None:
        captor = result.move.player
        capture_id = f"{game_id}:{result.move.move_number}"
        message = capture_message(
            bridge.service.config.domain, game_id, captor, int(result.capture), capture_id
        )
        # El cliente firma este mensaje y lo envía a /captures o al relay
        await sio.emit('capture_pending', {
            'game_id': game_id,
            'captor': captor,
            'piece_type': int(result.capture),
            'capture_id': capture_id,
            'message': message.decode('utf-8'),
        }, room=sid)

    if result.terminal is not None:
        await sio.emit('game_over_detected', {
            'game_id': game_id,
            'reason': result.terminal.value,
            'winner': result.winner,
        }, room=room_name(game_id))


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(other_asgi_app=None):
    """Envuelve la app FastAPI: /socket.io va a Socket.IO, el resto a FastAPI."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app)
