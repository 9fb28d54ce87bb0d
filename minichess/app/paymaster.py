"""
=============================================================================
MINICHESS - Relay de Patrocinio de Gas (Paymaster)
=============================================================================
Recibe un bundle de operaciones firmado por el jugador y lo ejecuta en su
nombre sin que tenga que pagar comisiones.

Reglas del relay (antes de ejecutar nada):
- La firma del bundle debe recuperar al `sender`
- El nonce de cada sender se usa una sola vez
- La sesión (si viene) no puede estar vencida
- Cada operación debe apuntar al contrato de escrow y usar un selector
  permitido por el relay Y por la sesión
- El depósito del paymaster debe cubrir el costo del bundle

Las operaciones se despachan en orden al servicio de escrow. Si una falla,
el bundle se detiene y se reportan los ids ya emitidos.
=============================================================================
"""

import hashlib
import json
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from .authorization import Ed25519Oracle, SignatureOracle, same_identity
from .config import Settings
from .errors import EscrowError, RelayRejected, SponsorshipExhausted, error_payload
from .escrow_service import EscrowService
from .ledger import Clock


ALLOWED_SELECTORS = (
    "createGameWithSession",
    "joinGameWithSession",
    "authorizeSession",
    "capturePiecePaymaster",
    "endGame",
    "claimTimeout",
    "cancelGame",
)

USER_OPERATION_TAG = "USER_OPERATION"


# =============================================================================
# SCHEMAS
# =============================================================================

class Operation(BaseModel):
    """Llamada a un punto de entrada del escrow."""
    target: str = Field(..., min_length=1)
    selector: str = Field(..., min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)
    value: str = "0"


class SessionGrant(BaseModel):
    """Permiso de sesión: qué contratos y selectores, y hasta cuándo."""
    targets: List[str]
    selectors: List[str]
    valid_until: float


class UserOperation(BaseModel):
    """Bundle firmado enviado al relay."""
    sender: str = Field(..., min_length=1)
    nonce: int = Field(..., ge=0)
    operations: List[Operation]
    session: Optional[SessionGrant] = None
    signature: str = ""


class UserOperationRequest(BaseModel):
    userOperation: UserOperation


def bundle_message(domain: str, op: UserOperation) -> bytes:
    """Mensaje canónico que firma el sender (todo menos la firma)."""
    body = {
        "sender": op.sender.lower(),
        "nonce": op.nonce,
        "operations": [o.model_dump() for o in op.operations],
        "session": op.session.model_dump() if op.session else None,
    }
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return f"{USER_OPERATION_TAG}|{domain}|{encoded}".encode("utf-8")


def user_operation_hash(domain: str, op: UserOperation) -> str:
    return "0x" + hashlib.sha256(bundle_message(domain, op)).hexdigest()


# =============================================================================
# RELAY
# =============================================================================

class PaymasterRelay:
    """Valida, patrocina y despacha bundles contra el servicio de escrow."""

    def __init__(
        self,
        service: EscrowService,
        escrow_address: str = Settings.ESCROW_ADDRESS,
        paymaster_address: str = Settings.PAYMASTER_ADDRESS,
        deposit: Decimal = Settings.PAYMASTER_DEPOSIT,
        gas_cost_per_operation: Decimal = Settings.GAS_COST_PER_OPERATION,
        oracle: Optional[SignatureOracle] = None,
        clock: Clock = time.time,
        max_fee_per_gas: int = Settings.MAX_FEE_PER_GAS,
        max_priority_fee_per_gas: int = Settings.MAX_PRIORITY_FEE_PER_GAS
    ):
        self.service = service
        self.escrow_address = escrow_address
        self.paymaster_address = paymaster_address
        self.deposit = Decimal(deposit)
        self.gas_cost_per_operation = Decimal(gas_cost_per_operation)
        self.oracle = oracle or Ed25519Oracle()
        self.clock = clock
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee_per_gas = max_priority_fee_per_gas

        self.spent = Decimal("0")
        self.operations_sponsored = 0
        self.used_nonces: Dict[str, Set[int]] = {}
        self.operation_status: Dict[str, Dict[str, Any]] = {}

        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], Awaitable[Any]]] = {
            "createGameWithSession": self._create_game_with_session,
            "joinGameWithSession": self._join_game_with_session,
            "authorizeSession": self._authorize_session,
            "capturePiecePaymaster": self._capture_piece,
            "endGame": self._end_game,
            "claimTimeout": self._claim_timeout,
            "cancelGame": self._cancel_game,
        }

    @property
    def available(self) -> Decimal:
        return self.deposit - self.spent

    def max_cost(self, op: UserOperation) -> Decimal:
        return self.gas_cost_per_operation * len(op.operations)

    # =========================================================================
    # VALIDACIÓN
    # =========================================================================

    def _reject(self, op: UserOperation, reason: str, **details):
        print(f"[RELAY] Bundle rechazado de {op.sender} (nonce {op.nonce}): {reason}")
        raise RelayRejected(reason, sender=op.sender, nonce=op.nonce, **details)

    def validate(self, op: UserOperation) -> str:
        """Aplica todas las reglas del relay. Retorna el userOpHash."""
        domain = self.service.config.domain
        if not op.operations:
            self._reject(op, "Bundle vacío")

        recovered = self.oracle.recover_signer(bundle_message(domain, op), op.signature)
        if not same_identity(recovered, op.sender):
            self._reject(op, "La firma del bundle no corresponde al sender")

        if op.nonce in self.used_nonces.get(op.sender.lower(), set()):
            self._reject(op, "Nonce ya utilizado")

        if op.session is not None and op.session.valid_until < self.clock():
            self._reject(op, "Sesión vencida", valid_until=op.session.valid_until)

        for index, operation in enumerate(op.operations):
            if not same_identity(operation.target, self.escrow_address):
                self._reject(op, f"Destino no permitido: {operation.target}", index=index)
            if operation.selector not in ALLOWED_SELECTORS:
                self._reject(op, f"Selector no permitido: {operation.selector}", index=index)
            if op.session is not None:
                if operation.selector not in op.session.selectors:
                    self._reject(op, f"Selector fuera de la sesión: {operation.selector}", index=index)
                if not any(same_identity(operation.target, t) for t in op.session.targets):
                    self._reject(op, f"Destino fuera de la sesión: {operation.target}", index=index)

        cost = self.max_cost(op)
        if cost > self.available:
            print(f"[RELAY] Depósito insuficiente: requiere {cost}, disponible {self.available}")
            raise SponsorshipExhausted(
                "El depósito del paymaster no cubre el bundle",
                required=cost,
                available=self.available,
            )
        return user_operation_hash(domain, op)

    # =========================================================================
    # ENVÍO
    # =========================================================================

    async def send_user_operation(self, op: UserOperation) -> Dict[str, Any]:
        user_op_hash = self.validate(op)
        self.used_nonces.setdefault(op.sender.lower(), set()).add(op.nonce)

        transactions: List[Dict[str, Any]] = []
        status = "success"
        failure: Optional[Dict[str, Any]] = None

        for index, operation in enumerate(op.operations):
            self.spent += self.gas_cost_per_operation
            tx_hash = "0x" + hashlib.sha256(f"{user_op_hash}:{index}".encode()).hexdigest()
            try:
                result = await self._handlers[operation.selector](op.sender, operation.args)
            except (EscrowError, ValueError, TypeError) as e:
                status = "failed"
                failure = {"index": index, "selector": operation.selector, **error_payload(e)}
                print(f"[RELAY] Operación {operation.selector} falló: {e}")
                break
            self.operations_sponsored += 1
            transactions.append({
                "transactionHash": tx_hash,
                "selector": operation.selector,
                "status": "sent",
                "result": result,
            })

        receipt: Dict[str, Any] = {
            "userOpHash": user_op_hash,
            "transactionHash": transactions[-1]["transactionHash"] if transactions else None,
            "allTransactions": transactions,
            "status": status,
        }
        if failure is not None:
            receipt["error"] = failure
        self.operation_status[user_op_hash] = receipt
        print(f"[RELAY] Bundle {user_op_hash[:12]}... de {op.sender}: {status} ({len(transactions)} tx)")
        return receipt

    def get_paymaster_data(self, op: UserOperation) -> Dict[str, str]:
        """Datos de patrocinio sin enviar (equivale a pm_getPaymasterData)."""
        user_op_hash = self.validate(op)
        max_cost_units = int(self.max_cost(op) * 10 ** 18)
        paymaster_and_data = "0x" + self.paymaster_address.encode("utf-8").hex() + format(max_cost_units, "064x")
        return {"paymasterAndData": paymaster_and_data, "userOpHash": user_op_hash}

    def get_operation_status(self, user_op_hash: str) -> Dict[str, Any]:
        receipt = self.operation_status.get(user_op_hash)
        if receipt is None:
            return {"userOpHash": user_op_hash, "status": "unknown"}
        return receipt

    def paymaster_balance(self) -> Dict[str, Any]:
        return {
            "address": self.paymaster_address,
            "deposit": str(self.deposit),
            "spent": str(self.spent),
            "available": str(self.available),
            "operations_sponsored": self.operations_sponsored,
        }

    def gas_prices(self) -> Dict[str, str]:
        return {
            "maxFeePerGas": str(self.max_fee_per_gas),
            "maxPriorityFeePerGas": str(self.max_priority_fee_per_gas),
        }

    # =========================================================================
    # DESPACHO AL ESCROW
    # =========================================================================

    @staticmethod
    def _arg(args: Dict[str, Any], name: str):
        if name not in args:
            raise RelayRejected(f"Falta el argumento '{name}'", argument=name)
        return args[name]

    async def _create_game_with_session(self, sender: str, args: Dict[str, Any]):
        game_id = await self.service.create_game_with_session(
            sender, self._arg(args, "deposit"), self._arg(args, "signature")
        )
        return {"game_id": game_id}

    async def _join_game_with_session(self, sender: str, args: Dict[str, Any]):
        game_id = int(self._arg(args, "game_id"))
        await self.service.join_game_with_session(
            game_id, sender, self._arg(args, "deposit"), self._arg(args, "signature")
        )
        return {"game_id": game_id}

    async def _authorize_session(self, sender: str, args: Dict[str, Any]):
        game_id = int(self._arg(args, "game_id"))
        await self.service.authorize_session(game_id, sender, self._arg(args, "signature"))
        return {"game_id": game_id}

    async def _capture_piece(self, sender: str, args: Dict[str, Any]):
        value = await self.service.capture_piece(
            int(self._arg(args, "game_id")),
            sender,
            self._arg(args, "piece_type"),
            str(self._arg(args, "capture_id")),
            self._arg(args, "signature"),
        )
        return {"value": str(value)}

    async def _end_game(self, sender: str, args: Dict[str, Any]):
        payout_a, payout_b = await self.service.end_game(
            int(self._arg(args, "game_id")),
            sender,
            self._arg(args, "winner"),
            args.get("reason", "CHECKMATE"),
        )
        return {"payout_a": str(payout_a), "payout_b": str(payout_b)}

    async def _claim_timeout(self, sender: str, args: Dict[str, Any]):
        payout_a, payout_b = await self.service.claim_timeout(int(self._arg(args, "game_id")), sender)
        return {"payout_a": str(payout_a), "payout_b": str(payout_b)}

    async def _cancel_game(self, sender: str, args: Dict[str, Any]):
        refund = await self.service.cancel_game(int(self._arg(args, "game_id")), sender)
        return {"refund": str(refund)}


# =============================================================================
# ENDPOINTS
# =============================================================================

router = APIRouter(prefix="/paymaster", tags=["Paymaster"])


def get_relay(request: Request) -> PaymasterRelay:
    return request.app.state.relay


@router.post("/sendUserOperation")
async def send_user_operation(body: UserOperationRequest, relay: PaymasterRelay = Depends(get_relay)):
    """Valida y ejecuta un bundle patrocinado."""
    return await relay.send_user_operation(body.userOperation)


@router.post("/pm_getPaymasterData")
async def get_paymaster_data(body: UserOperationRequest, relay: PaymasterRelay = Depends(get_relay)):
    return relay.get_paymaster_data(body.userOperation)


@router.get("/getUserOperationStatus/{user_op_hash}")
async def get_user_operation_status(user_op_hash: str, relay: PaymasterRelay = Depends(get_relay)):
    return relay.get_operation_status(user_op_hash)


@router.get("/getPaymasterBalance")
async def get_paymaster_balance(relay: PaymasterRelay = Depends(get_relay)):
    return relay.paymaster_balance()


@router.get("/getGasPrices")
async def get_gas_prices(relay: PaymasterRelay = Depends(get_relay)):
    return relay.gas_prices()
