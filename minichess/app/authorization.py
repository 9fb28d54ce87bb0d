"""
=============================================================================
MINICHESS - Verificador de Autorizaciones
=============================================================================
Valida que un mensaje firmado fue producido por el jugador que dice
firmarlo, para una partida y un dominio específicos, y que una captura no
haya sido consumida antes.

Mensajes canónicos (ligados a partida + dominio para impedir replay entre
partidas o despliegues):
    AUTHORIZE_SESSION|<dominio>|<game_id>
    CAPTURE_PIECE|<dominio>|<game_id>|<captor>|<pieza>|<capture_id>

La criptografía es un oráculo externo: Ed25519 vía `cryptography`.
Una firma es el sobre hex 0x || pubkey(32 bytes) || firma(64 bytes); la
identidad recuperada es 0x || pubkey.
=============================================================================
"""

from typing import Dict, Optional, Protocol, Set

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .config import EscrowConfig
from .errors import (
    CaptureLimitExceeded,
    CaptureReplayed,
    InvalidSignature,
    PlayerNotAuthorized,
)
from .ledger import Game, normalize_identity


SESSION_TAG = "AUTHORIZE_SESSION"
CAPTURE_TAG = "CAPTURE_PIECE"

PUBKEY_SIZE = 32
SIGNATURE_SIZE = 64


# =============================================================================
# MENSAJES CANÓNICOS
# =============================================================================

def session_message(domain: str, game_id: int) -> bytes:
    return f"{SESSION_TAG}|{domain}|{game_id}".encode("utf-8")


def capture_message(
    domain: str,
    game_id: int,
    captor: str,
    piece_type: int,
    capture_id: str
) -> bytes:
    return f"{CAPTURE_TAG}|{domain}|{game_id}|{captor.lower()}|{int(piece_type)}|{capture_id}".encode("utf-8")


# =============================================================================
# ORÁCULO DE FIRMAS
# =============================================================================

class SignatureOracle(Protocol):
    """Recupera la identidad firmante de un mensaje."""

    def recover_signer(self, message: bytes, signature: str) -> Optional[str]:
        ...


def identity_of(private_key: Ed25519PrivateKey) -> str:
    """Identidad pública (0x + pubkey hex) de una llave privada."""
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return "0x" + raw.hex()


def sign_message(private_key: Ed25519PrivateKey, message: bytes) -> str:
    """Produce el sobre de firma recuperable que espera el oráculo."""
    pubkey = bytes.fromhex(identity_of(private_key)[2:])
    return "0x" + (pubkey + private_key.sign(message)).hex()


class Ed25519Oracle:
    """Oráculo Ed25519: verifica con la llave embebida en el sobre."""

    def recover_signer(self, message: bytes, signature: str) -> Optional[str]:
        if not isinstance(signature, str):
            return None
        raw_hex = signature[2:] if signature.startswith("0x") else signature
        try:
            raw = bytes.fromhex(raw_hex)
        except ValueError:
            return None
        if len(raw) != PUBKEY_SIZE + SIGNATURE_SIZE:
            return None

        pubkey_bytes, sig_bytes = raw[:PUBKEY_SIZE], raw[PUBKEY_SIZE:]
        try:
            Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(sig_bytes, message)
        except (CryptoInvalidSignature, ValueError):
            return None
        return "0x" + pubkey_bytes.hex()


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    """Las identidades hex se comparan sin distinguir mayúsculas."""
    if a is None or b is None:
        return False
    return normalize_identity(a) == normalize_identity(b)


# =============================================================================
# CAPTURAS PROCESADAS
# =============================================================================

class ProcessedCaptureSet:
    """
    Conjunto acotado de capture ids ya aplicados en una partida.
    Una partida tiene como máximo 30 capturas posibles (15 piezas no-rey
    por bando), así que la capacidad es fija.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._ids: Set[str] = set()

    def __contains__(self, capture_id: str) -> bool:
        return capture_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def is_full(self) -> bool:
        return len(self._ids) >= self.capacity

    def add(self, capture_id: str):
        if capture_id in self._ids:
            raise CaptureReplayed(f"Captura {capture_id} ya aplicada", capture_id=capture_id)
        if self.is_full:
            raise CaptureLimitExceeded(
                f"Límite de {self.capacity} capturas alcanzado",
                capture_id=capture_id,
            )
        self._ids.add(capture_id)

    def ids(self) -> Set[str]:
        return set(self._ids)


# =============================================================================
# VERIFICADOR
# =============================================================================

class AuthorizationVerifier:
    """
    Verifica autorizaciones de sesión y de captura.

    Las variantes `require_*` lanzan el error específico; las variantes
    `verify_*` retornan bool.
    """

    def __init__(
        self,
        config: Optional[EscrowConfig] = None,
        oracle: Optional[SignatureOracle] = None
    ):
        self.config = config or EscrowConfig()
        self.oracle = oracle or Ed25519Oracle()
        self.processed: Dict[int, ProcessedCaptureSet] = {}

    def processed_for(self, game_id: int) -> ProcessedCaptureSet:
        captures = self.processed.get(game_id)
        if captures is None:
            captures = ProcessedCaptureSet(self.config.max_captures_per_game)
            self.processed[game_id] = captures
        return captures

    def is_processed(self, game_id: int, capture_id: str) -> bool:
        captures = self.processed.get(game_id)
        return captures is not None and capture_id in captures

    def processed_ids(self, game_id: int) -> Set[str]:
        captures = self.processed.get(game_id)
        return captures.ids() if captures else set()

    # -------------------------------------------------------------------------
    # Sesión
    # -------------------------------------------------------------------------

    def require_session_authorization(
        self,
        game: Game,
        claimed_signer: str,
        signature: str,
        record: bool = False
    ):
        message = session_message(self.config.domain, game.id)
        recovered = self.oracle.recover_signer(message, signature)
        if not same_identity(recovered, claimed_signer):
            raise InvalidSignature(
                "La firma de sesión no corresponde al jugador",
                game_id=game.id,
                claimed=claimed_signer,
            )
        if record:
            game.authorized_players.add(normalize_identity(claimed_signer))

    def verify_session_authorization(
        self,
        game: Game,
        claimed_signer: str,
        signature: str,
        record: bool = False
    ) -> bool:
        try:
            self.require_session_authorization(game, claimed_signer, signature, record)
        except InvalidSignature:
            return False
        return True

    # -------------------------------------------------------------------------
    # Captura
    # -------------------------------------------------------------------------

    def require_capture_authorization(
        self,
        game: Game,
        captor: str,
        piece_type: int,
        capture_id: str,
        signature: str
    ):
        """
        Exige firma válida del captor, captor autorizado y capture id nuevo.
        En éxito registra el capture id (idempotencia).
        """
        message = capture_message(self.config.domain, game.id, captor, piece_type, capture_id)
        recovered = self.oracle.recover_signer(message, signature)
        if not same_identity(recovered, captor):
            raise InvalidSignature(
                "La firma de captura no corresponde al captor",
                game_id=game.id,
                captor=captor,
            )
        if normalize_identity(captor) not in game.authorized_players:
            raise PlayerNotAuthorized(
                f"{captor} no autorizó sesión en la partida {game.id}",
                game_id=game.id,
            )
        self.processed_for(game.id).add(capture_id)

    def verify_capture_authorization(
        self,
        game: Game,
        captor: str,
        piece_type: int,
        capture_id: str,
        signature: str
    ) -> bool:
        try:
            self.require_capture_authorization(game, captor, piece_type, capture_id, signature)
        except (InvalidSignature, PlayerNotAuthorized, CaptureReplayed, CaptureLimitExceeded):
            return False
        return True

    def restore_processed(self, game_id: int, capture_ids: Set[str]):
        """Reinstala el conjunto de capturas (carga desde BD o rollback)."""
        captures = ProcessedCaptureSet(self.config.max_captures_per_game)
        captures._ids = set(capture_ids)
        self.processed[game_id] = captures
