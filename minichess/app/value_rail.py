"""
=============================================================================
MINICHESS - Rail de Transferencia de Valor
=============================================================================
Los balances del escrow son contabilidad interna; el movimiento real de
valor (depósito al crear/unirse, pago al liquidar, reembolso al cancelar)
se delega a un rail externo (token o red de pagos).

Contrato del rail: ejecuta un lote de transferencias de forma atómica
(todo o nada) y retorna una referencia por transferencia. Cualquier rechazo
se propaga como ValueTransferFailed; el núcleo no reintenta.

InMemoryRail implementa el contrato con un libro mayor en memoria y hashes
por entrada para auditoría.
=============================================================================
"""

import hashlib
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import ValueTransferFailed


@dataclass(frozen=True)
class Transfer:
    """Movimiento de valor entre dos identidades."""
    from_identity: str
    to_identity: str
    amount: Decimal


class ValueTransferRail(Protocol):
    async def execute(self, transfers: Sequence[Transfer], memo: str = "") -> List[str]:
        ...


# =============================================================================
# LIBRO MAYOR EN MEMORIA
# =============================================================================

@dataclass
class RailEntry:
    """Entrada del libro mayor del rail."""
    entry_id: str
    memo: str
    timestamp: float
    from_identity: str
    to_identity: str
    amount: Decimal
    status: str = "PENDING"  # PENDING, COMMITTED, ROLLED_BACK
    entry_hash: str = ""

    def compute_entry_hash(self) -> str:
        """Hash de la entrada para inmutabilidad."""
        data = {
            "entry_id": self.entry_id,
            "memo": self.memo,
            "timestamp": self.timestamp,
            "from": self.from_identity,
            "to": self.to_identity,
            "amount": str(self.amount),
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()


class InMemoryRail:
    """
    Rail de valor en memoria.

    - Las cuentas deben fondearse con credit() antes de depositar
    - Un lote con cualquier transferencia inválida se rechaza completo
    - La cuenta de escrow puede fondearse como cualquier otra
    - Con `faucet` (modo testnet), toda cuenta desconocida que envía valor
      recibe primero ese monto, como lo haría un faucet de red de pruebas
    """

    def __init__(self, clock=time.time, faucet: Optional[Decimal] = None):
        self.clock = clock
        self.faucet = Decimal(faucet) if faucet is not None else None
        self.balances: Dict[str, Decimal] = {}
        self.entries: List[RailEntry] = []
        self.frozen = False
        self._sequence = 0

    def credit(self, identity: str, amount: Decimal):
        """Fondea una cuenta (on-ramp externo)."""
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("El crédito debe ser positivo")
        self.balances[identity] = self.balances.get(identity, Decimal("0")) + amount

    def balance_of(self, identity: str) -> Decimal:
        return self.balances.get(identity, Decimal("0"))

    def _new_entry(self, transfer: Transfer, memo: str) -> RailEntry:
        self._sequence += 1
        entry = RailEntry(
            entry_id=f"RAIL-{self._sequence:08d}",
            memo=memo,
            timestamp=self.clock(),
            from_identity=transfer.from_identity,
            to_identity=transfer.to_identity,
            amount=transfer.amount,
        )
        entry.entry_hash = entry.compute_entry_hash()
        return entry

    def _validate(self, transfers: Sequence[Transfer]):
        if self.frozen:
            raise ValueTransferFailed("Rail congelado: no acepta transferencias")

        if self.faucet is not None:
            for transfer in transfers:
                if transfer.from_identity not in self.balances:
                    self.credit(transfer.from_identity, self.faucet)
                    print(f"[RAIL] Faucet: {self.faucet} -> {transfer.from_identity}")

        projected = dict(self.balances)
        for transfer in transfers:
            if transfer.amount <= 0:
                raise ValueTransferFailed(f"Monto no positivo: {transfer.amount}")
            available = projected.get(transfer.from_identity, Decimal("0"))
            if available < transfer.amount:
                raise ValueTransferFailed(
                    f"Fondos insuficientes en {transfer.from_identity}",
                    available=available,
                    requested=transfer.amount,
                )
            projected[transfer.from_identity] = available - transfer.amount
            projected[transfer.to_identity] = projected.get(transfer.to_identity, Decimal("0")) + transfer.amount

    async def execute(self, transfers: Sequence[Transfer], memo: str = "") -> List[str]:
        pending = [self._new_entry(t, memo) for t in transfers]
        try:
            self._validate(transfers)
        except ValueTransferFailed:
            for entry in pending:
                entry.status = "ROLLED_BACK"
            self.entries.extend(pending)
            print(f"[RAIL] Rolled back batch '{memo}' ({len(pending)} transfers)")
            raise

        for transfer, entry in zip(transfers, pending):
            self.balances[transfer.from_identity] -= transfer.amount
            self.balances[transfer.to_identity] = self.balance_of(transfer.to_identity) + transfer.amount
            entry.status = "COMMITTED"
        self.entries.extend(pending)
        return [entry.entry_id for entry in pending]

    def committed_entries(self) -> List[RailEntry]:
        return [e for e in self.entries if e.status == "COMMITTED"]

    def verify_all_entries(self) -> Dict[str, Any]:
        """
        Verifica la integridad de todas las entradas.
        El rail solo mueve valor, así que la suma total debe ser igual a lo
        acreditado externamente.
        """
        tampered = [e.entry_id for e in self.entries if e.entry_hash != e.compute_entry_hash()]
        return {
            "total_entries_verified": len(self.entries),
            "committed": len(self.committed_entries()),
            "tampered_entries": tampered,
            "total_balance": str(sum(self.balances.values(), Decimal("0"))),
            "integrity_status": "OK" if not tampered else "ALERT",
        }

    def summary(self, escrow_account: Optional[str] = None) -> Dict[str, Any]:
        result = {
            "accounts": len(self.balances),
            "total_entries": len(self.entries),
            "last_entry": self.entries[-1].entry_id if self.entries else None,
        }
        if escrow_account:
            result["escrow_held"] = str(self.balance_of(escrow_account))
        return result
