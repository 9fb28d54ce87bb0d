"""
=============================================================================
MINICHESS - Configuración del Escrow
=============================================================================
Constantes económicas y ventanas de tiempo del contrato de escrow.
Se inyectan como estructura inmutable en cada componente para que los tests
puedan comprimir los timeouts sin tocar la lógica de transición.

Los parámetros de despliegue (URL de base de datos, relay, CORS) se leen de
variables de entorno una sola vez al iniciar.
=============================================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Tuple


# =============================================================================
# TABLA DE VALORES POR PIEZA
# =============================================================================

# Clave: número de pieza (1=peón ... 5=dama). El rey (6) no tiene valor.
DEFAULT_PIECE_VALUES: Dict[int, Decimal] = {
    1: Decimal("0.05"),  # Peón
    2: Decimal("0.15"),  # Caballo
    3: Decimal("0.15"),  # Alfil
    4: Decimal("0.25"),  # Torre
    5: Decimal("0.50"),  # Dama
}

KING_PIECE_TYPE = 6


@dataclass(frozen=True)
class EscrowConfig:
    """
    Configuración inmutable del escrow.

    Valores por defecto:
    - Escrow por jugador: 2.50 unidades
    - Timeout de movimiento: 30 minutos
    - Periodo de gracia para cancelar: 5 minutos
    """
    escrow_amount: Decimal = Decimal("2.50")
    piece_values: Dict[int, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_PIECE_VALUES)
    )
    move_timeout: float = 1800.0             # Segundos sin mover antes de reclamar
    creation_grace_period: float = 300.0     # Segundos antes de poder cancelar
    domain: str = "minichess:celo-sepolia:11142220"
    max_captures_per_game: int = 30          # 15 piezas no-rey por bando
    escrow_account: str = "MINICHESS_ESCROW"

    def __post_init__(self):
        if self.escrow_amount <= 0:
            raise ValueError("escrow_amount debe ser positivo")
        if self.move_timeout < 0 or self.creation_grace_period < 0:
            raise ValueError("Las ventanas de tiempo no pueden ser negativas")
        if KING_PIECE_TYPE in self.piece_values:
            raise ValueError("El rey no puede tener valor de captura")
        for piece_type, value in self.piece_values.items():
            if value <= 0:
                raise ValueError(f"Valor inválido para pieza {piece_type}: {value}")
        if self.max_captures_per_game <= 0:
            raise ValueError("max_captures_per_game debe ser positivo")

    @property
    def total_pot(self) -> Decimal:
        """Pot total de una partida con dos depósitos."""
        return self.escrow_amount * 2


# =============================================================================
# PARÁMETROS DE DESPLIEGUE
# =============================================================================

def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class Settings:
    """Parámetros de despliegue leídos del entorno."""

    DATABASE_URL = os.getenv("MINICHESS_DATABASE_URL", "")
    DOMAIN = os.getenv("MINICHESS_DOMAIN", "minichess:celo-sepolia:11142220")
    CORS_ORIGINS = _split_csv(os.getenv("MINICHESS_CORS_ORIGINS", "*"))

    # Dirección del contrato de escrow (destino permitido del relay)
    ESCROW_ADDRESS = os.getenv("MINICHESS_ESCROW_ADDRESS", "minichess-escrow")
    PAYMASTER_ADDRESS = os.getenv("MINICHESS_PAYMASTER_ADDRESS", "minichess-paymaster")

    # Faucet del rail en memoria (vacío = cuentas deben fondearse a mano)
    RAIL_FAUCET_AMOUNT = os.getenv("MINICHESS_RAIL_FAUCET_AMOUNT", "10")

    # Patrocinio de gas
    PAYMASTER_DEPOSIT = Decimal(os.getenv("MINICHESS_PAYMASTER_DEPOSIT", "0.1"))
    GAS_COST_PER_OPERATION = Decimal(os.getenv("MINICHESS_GAS_COST_PER_OPERATION", "0.0005"))
    MAX_FEE_PER_GAS = int(os.getenv("MINICHESS_MAX_FEE_PER_GAS", "10000000000"))
    MAX_PRIORITY_FEE_PER_GAS = int(os.getenv("MINICHESS_MAX_PRIORITY_FEE_PER_GAS", "1000000000"))

    @classmethod
    def escrow_config(cls) -> EscrowConfig:
        """Construye la configuración del escrow para este despliegue."""
        return EscrowConfig(domain=cls.DOMAIN)
