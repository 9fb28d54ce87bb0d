"""
=============================================================================
MINICHESS - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servidor del escrow de ajedrez con capturas monetizadas.

Integra:
- FastAPI para la API REST del escrow y del relay de patrocinio
- Socket.IO para eventos en tiempo real por partida
- SQLAlchemy async (opcional) para persistir el ledger
=============================================================================
"""

import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..models import create_session_factory
from .api import router as escrow_router
from .chess_bridge import MoveLog
from .config import Settings
from .errors import EscrowError
from .escrow_service import EscrowService
from .paymaster import PaymasterRelay, router as paymaster_router
from .persistence import EscrowRepository
from .value_rail import InMemoryRail
from .websocket_handler import bridge, create_socket_app


VERSION = "0.1.0"


def build_service() -> EscrowService:
    """Servicio por defecto del despliegue (rail en memoria, BD opcional)."""
    faucet = Decimal(Settings.RAIL_FAUCET_AMOUNT) if Settings.RAIL_FAUCET_AMOUNT else None
    repository = None
    if Settings.DATABASE_URL:
        repository = EscrowRepository(create_session_factory(Settings.DATABASE_URL))
    return EscrowService(
        config=Settings.escrow_config(),
        rail=InMemoryRail(faucet=faucet),
        repository=repository,
    )


def create_app(
    service: Optional[EscrowService] = None,
    relay: Optional[PaymasterRelay] = None,
    move_log: Optional[MoveLog] = None
) -> FastAPI:
    """Construye la app. Los tests inyectan su propio servicio y relay."""
    service = service or build_service()
    relay = relay or PaymasterRelay(service)
    move_log = move_log or MoveLog()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        print("[MINICHESS] Iniciando servidor...")
        if service.repository is not None:
            await service.repository.create_schema()
            await service.restore()
            print("[MINICHESS] Persistencia SQLAlchemy activa")
        bridge.attach(service, move_log)
        print(f"[MINICHESS] Dominio de firmas: {service.config.domain}")
        print(f"[MINICHESS] Relay de patrocinio: {relay.paymaster_address}")
        yield
        # Shutdown
        bridge.detach()
        print("[MINICHESS] Cerrando servidor...")

    app = FastAPI(
        title="MiniChess Escrow API",
        description="""
        ## Escrow de ajedrez con capturas monetizadas

        ### Características:
        - **Escrow por partida**: cada jugador deposita y el valor se mueve con las capturas
        - **Sesiones firmadas**: una firma por partida habilita las capturas
        - **Relay de patrocinio**: operaciones sin pagar comisiones
        - **WebSockets**: eventos en tiempo real por partida

        ### Estados de Partida:
        WAITING → ACTIVE → FINISHED, o WAITING → CANCELLED
        """,
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.escrow = service
    app.state.relay = relay
    app.state.move_log = move_log

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(Settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    # =========================================================================
    # MANEJO DE ERRORES
    # =========================================================================

    @app.exception_handler(EscrowError)
    async def escrow_error_handler(request: Request, exc: EscrowError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "VALIDATION_ERROR", "category": "PRECONDITION", "detail": jsonable_encoder(exc.errors())},
        )

    # =========================================================================
    # HEALTH & STATUS
    # =========================================================================

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "minichess-escrow",
            "version": VERSION,
            "timestamp": time.time()
        }

    @app.get("/api/v1/status")
    async def server_status():
        """Estado del escrow y del relay."""
        return {
            "server": "online",
            "games": len(service.registry.games),
            "next_game_id": service.next_game_id(),
            "escrow_held": str(service.escrow_held()),
            "persistence": service.repository is not None,
            "paymaster": relay.paymaster_balance(),
            "timestamp": time.time()
        }

    app.include_router(escrow_router, prefix="/api/v1")
    app.include_router(paymaster_router, prefix="/api/v1")
    return app


app = create_app()

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
combined_app = create_socket_app(app)
