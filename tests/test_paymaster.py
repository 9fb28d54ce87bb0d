from decimal import Decimal

import pytest

from minichess.app.errors import RelayRejected, SponsorshipExhausted
from minichess.app.ledger import GameStatus
from minichess.app.paymaster import PaymasterRelay, UserOperation, bundle_message

from conftest import DOMAIN, STAKE

ESCROW = "0xEscrow"


@pytest.fixture
def relay(service, clock):
    return PaymasterRelay(
        service,
        escrow_address=ESCROW,
        paymaster_address="0xPaymaster",
        deposit=Decimal("0.01"),
        gas_cost_per_operation=Decimal("0.001"),
        clock=clock,
    )


def signed_operation(player, nonce, operations, session=None, signer=None):
    op = UserOperation(sender=player.identity, nonce=nonce, operations=operations, session=session)
    signature = (signer or player).sign(bundle_message(DOMAIN, op))
    return op.model_copy(update={"signature": signature})


def call(selector, target=ESCROW, **args):
    return {"target": target, "selector": selector, "args": args}


async def test_sponsored_game_from_creation_to_settlement(relay, service, alice, bob):
    game_id = service.next_game_id()
    create = signed_operation(alice, 0, [
        call("createGameWithSession", deposit=str(STAKE), signature=alice.session(game_id)),
    ])
    receipt = await relay.send_user_operation(create)
    assert receipt["status"] == "success"
    assert receipt["allTransactions"][0]["result"] == {"game_id": game_id}

    join = signed_operation(bob, 0, [
        call("joinGameWithSession", game_id=game_id, deposit=str(STAKE), signature=bob.session(game_id)),
    ])
    await relay.send_user_operation(join)

    moves = signed_operation(alice, 1, [
        call("capturePiecePaymaster", game_id=game_id, piece_type=5, capture_id="q1",
             signature=alice.capture(game_id, 5, "q1")),
        call("endGame", game_id=game_id, winner=alice.identity, reason="CHECKMATE"),
    ])
    receipt = await relay.send_user_operation(moves)

    assert receipt["status"] == "success"
    assert len(receipt["allTransactions"]) == 2
    assert receipt["transactionHash"] == receipt["allTransactions"][-1]["transactionHash"]
    assert receipt["allTransactions"][1]["result"] == {"payout_a": "3.00", "payout_b": "2.00"}
    assert service.get_game(game_id).status == GameStatus.FINISHED
    assert relay.get_operation_status(receipt["userOpHash"])["status"] == "success"
    assert relay.paymaster_balance()["operations_sponsored"] == 4


async def test_rejects_targets_outside_escrow(relay, alice):
    op = signed_operation(alice, 0, [call("cancelGame", target="0xElsewhere", game_id=1)])

    with pytest.raises(RelayRejected):
        await relay.send_user_operation(op)
    assert relay.paymaster_balance()["spent"] == "0"


async def test_rejects_selectors_outside_allow_list(relay, alice):
    op = signed_operation(alice, 0, [call("withdrawAll")])

    with pytest.raises(RelayRejected):
        await relay.send_user_operation(op)


async def test_session_limits_selectors_and_expiry(relay, clock, alice):
    session = {"targets": [ESCROW], "selectors": ["capturePiecePaymaster"], "valid_until": clock.now + 60}
    outside = signed_operation(alice, 0, [call("cancelGame", game_id=1)], session=session)

    with pytest.raises(RelayRejected):
        await relay.send_user_operation(outside)

    clock.advance(61)
    expired = signed_operation(alice, 1, [call("capturePiecePaymaster", game_id=1)], session=session)
    with pytest.raises(RelayRejected):
        await relay.send_user_operation(expired)


async def test_rejects_forged_bundle_and_nonce_replay(relay, clock, service, alice, bob):
    forged = signed_operation(alice, 0, [call("cancelGame", game_id=1)], signer=bob)
    with pytest.raises(RelayRejected):
        await relay.send_user_operation(forged)

    game_id = await service.create_game(alice.identity, STAKE)
    clock.advance(300)
    cancel = signed_operation(alice, 0, [call("cancelGame", game_id=game_id)])
    assert (await relay.send_user_operation(cancel))["status"] == "success"

    with pytest.raises(RelayRejected):
        await relay.send_user_operation(cancel)


async def test_failed_operation_stops_bundle(relay, service, start_game, alice):
    game_id = await start_game()
    op = signed_operation(alice, 0, [
        call("capturePiecePaymaster", game_id=game_id, piece_type=1, capture_id="p1",
             signature=alice.capture(game_id, 1, "p1")),
        call("capturePiecePaymaster", game_id=game_id, piece_type=1, capture_id="p1",
             signature=alice.capture(game_id, 1, "p1")),
        call("endGame", game_id=game_id, winner=alice.identity),
    ])

    receipt = await relay.send_user_operation(op)

    assert receipt["status"] == "failed"
    assert len(receipt["allTransactions"]) == 1
    assert receipt["error"]["error"] == "CAPTURE_REPLAYED"
    assert receipt["error"]["index"] == 1
    assert service.get_game(game_id).status == GameStatus.ACTIVE


async def test_sponsorship_budget(relay, alice):
    op = signed_operation(alice, 0, [call("cancelGame", game_id=n) for n in range(11)])

    with pytest.raises(SponsorshipExhausted):
        await relay.send_user_operation(op)


async def test_empty_bundle_is_rejected(relay, alice):
    with pytest.raises(RelayRejected):
        await relay.send_user_operation(signed_operation(alice, 0, []))


def test_paymaster_data_and_gas_prices(relay, alice):
    op = signed_operation(alice, 0, [call("claimTimeout", game_id=1)])

    data = relay.get_paymaster_data(op)

    assert data["userOpHash"].startswith("0x")
    assert data["paymasterAndData"].startswith("0x" + "0xPaymaster".encode().hex())
    assert relay.get_operation_status(data["userOpHash"])["status"] == "unknown"
    assert set(relay.gas_prices()) == {"maxFeePerGas", "maxPriorityFeePerGas"}
