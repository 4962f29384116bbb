"""
Unit tests for the SAFEEngine module of the HAI protocol model.

Covers SAFE manipulation checks, confiscation, rate accrual and the
accounting identities that every ledger mutation must keep.
"""

import unittest
import sys
import os

from hypothesis import given, settings
from hypothesis import strategies as st

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from execution_env import ExecutionEnvironment
from fixed_point import RAD, RAY, WAD
from protocol_errors import (
    ArithmeticUnderflow,
    CeilingExceeded,
    CollateralTypeAlreadyInitialized,
    CollateralTypeNotInitialized,
    ContractNotEnabled,
    DustySAFEDebt,
    InvalidParameter,
    NotCollateralSrcAllowed,
    NotDebtDstAllowed,
    NotSAFEAllowed,
    NotSafeToModify,
    ProtocolError,
    SAFEDebtCeilingHit,
    Unauthorized,
    UnrecognizedParam,
)
from safe_engine import SAFEEngine

GOV = "gov"
ETH = "ETH-A"


def build_engine():
    """A SAFE engine with one type priced at 200 (safety) / 150 (liquidation)."""
    env = ExecutionEnvironment()
    engine = SAFEEngine(env, GOV, global_debt_ceiling=10 ** 6 * RAD)
    engine.initialize_collateral_type(GOV, ETH, debt_ceiling=10 ** 6 * RAD, debt_floor=100 * RAD)
    engine.update_collateral_price(GOV, ETH, 200 * RAY, 150 * RAY)
    return env, engine


def check_identities(test, engine, collateral_type=ETH):
    """Asserts the three ledger identities."""
    c_data = engine.get_collateral_data(collateral_type)
    test.assertEqual(
        c_data.locked_amount + engine.total_free_collateral(collateral_type),
        engine.collateral_joined[collateral_type] - engine.collateral_exited[collateral_type],
    )
    test.assertEqual(c_data.locked_amount, engine.total_locked_collateral(collateral_type))
    test.assertEqual(c_data.debt_amount, sum(s.generated_debt for s in engine.safes[collateral_type].values()))
    test.assertEqual(
        sum(engine.collateral_data[ct].debt_amount * engine.collateral_data[ct].accumulated_rate
            for ct in engine.collateral_list) + engine.global_unbacked_debt,
        engine.global_debt,
    )
    for balance in list(engine.coin_balance.values()) + list(engine.debt_balance.values()):
        test.assertGreaterEqual(balance, 0)
    for balances in engine.token_collateral.values():
        for balance in balances.values():
            test.assertGreaterEqual(balance, 0)


class TestSAFEEngine(unittest.TestCase):
    def setUp(self):
        """Set up the test environment."""
        self.env, self.engine = build_engine()
        self.engine.modify_collateral_balance(GOV, ETH, "alice", 10 * WAD)

    def test_initialize_collateral_type(self):
        c_data = self.engine.get_collateral_data(ETH)
        self.assertEqual(c_data.accumulated_rate, RAY)
        self.assertEqual(self.engine.collateral_list, [ETH])
        with self.assertRaises(CollateralTypeAlreadyInitialized):
            self.engine.initialize_collateral_type(GOV, ETH)
        with self.assertRaises(Unauthorized):
            self.engine.initialize_collateral_type("mallory", "WBTC-A")

    def test_getters_return_copies(self):
        self.engine.get_collateral_data(ETH).accumulated_rate = 0
        self.assertEqual(self.engine.get_collateral_data(ETH).accumulated_rate, RAY)

    def test_open_safe(self):
        """Lock 10 ETH and draw 1000 coins."""
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)

        safe = self.engine.get_safe(ETH, "alice")
        self.assertEqual(safe.locked_collateral, 10 * WAD)
        self.assertEqual(safe.generated_debt, 1000 * WAD)
        self.assertEqual(self.engine.get_coin_balance("alice"), 1000 * RAD)
        self.assertEqual(self.engine.get_token_collateral(ETH, "alice"), 0)
        self.assertEqual(self.engine.global_debt, 1000 * RAD)
        check_identities(self, self.engine)

        event = self.env.events.last("ModifySAFECollateralization")
        self.assertEqual(event.data["delta_debt"], 1000 * WAD)

    def test_safety_check(self):
        # 10 ETH at a safety price of 200 supports at most 2000 coins
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 2000 * WAD)
        with self.assertRaises(NotSafeToModify):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 0, 1)

    def test_zero_price_blocks_new_debt(self):
        self.engine.update_collateral_price(GOV, ETH, 0, 0)
        with self.assertRaises(NotSafeToModify):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 100 * WAD)

    def test_risk_reducing_needs_no_safety(self):
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 5 * WAD, 1000 * WAD)
        self.engine.update_collateral_price(GOV, ETH, 100 * RAY, 100 * RAY)
        # Adding collateral to an unsafe SAFE needs no safety check
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 1 * WAD, 0)
        self.assertEqual(self.engine.get_safe(ETH, "alice").locked_collateral, 6 * WAD)

    def test_consent_checks(self):
        self.engine.modify_collateral_balance(GOV, ETH, "bob", 10 * WAD)
        # bob cannot draw debt on alice's SAFE
        with self.assertRaises(NotSAFEAllowed):
            self.engine.modify_safe_collateralization("bob", ETH, "alice", "bob", "bob", 1 * WAD, 100 * WAD)
        # bob cannot lock alice's collateral into his SAFE
        with self.assertRaises(NotCollateralSrcAllowed):
            self.engine.modify_safe_collateralization("bob", ETH, "bob", "alice", "bob", 1 * WAD, 0)

        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)
        self.engine.transfer_internal_coins("alice", "alice", "bob", 500 * RAD)
        # bob cannot repay alice's debt with alice's coins
        with self.assertRaises(NotDebtDstAllowed):
            self.engine.modify_safe_collateralization("bob", ETH, "alice", "alice", "alice", 0, -100 * WAD)
        # but can repay with his own coins
        self.engine.modify_safe_collateralization("bob", ETH, "alice", "bob", "bob", 0, -100 * WAD)
        self.assertEqual(self.engine.get_safe(ETH, "alice").generated_debt, 900 * WAD)

    def test_approved_account_can_modify(self):
        self.engine.approve_safe_modification("alice", "bob")
        self.engine.modify_safe_collateralization("bob", ETH, "alice", "alice", "bob", 10 * WAD, 500 * WAD)
        self.assertEqual(self.engine.get_coin_balance("bob"), 500 * RAD)

        self.engine.deny_safe_modification("alice", "bob")
        with self.assertRaises(NotSAFEAllowed):
            self.engine.modify_safe_collateralization("bob", ETH, "alice", "alice", "bob", 0, 100 * WAD)

    def test_debt_floor(self):
        with self.assertRaises(DustySAFEDebt):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 99 * WAD)
        # Exactly the floor is allowed, and so is repaying everything
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 100 * WAD)
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 0, -100 * WAD)
        self.assertEqual(self.engine.get_safe(ETH, "alice").generated_debt, 0)

    def test_ceilings(self):
        self.engine.modify_collateral_parameters(GOV, ETH, "debtCeiling", 500 * RAD)
        with self.assertRaises(CeilingExceeded):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 501 * WAD)

        self.engine.modify_collateral_parameters(GOV, ETH, "debtCeiling", 10 ** 6 * RAD)
        self.engine.modify_parameters(GOV, "globalDebtCeiling", 400 * RAD)
        with self.assertRaises(CeilingExceeded):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 401 * WAD)

        self.engine.modify_parameters(GOV, "globalDebtCeiling", 10 ** 6 * RAD)
        self.engine.modify_parameters(GOV, "safeDebtCeiling", 300 * WAD)
        with self.assertRaises(SAFEDebtCeilingHit):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 301 * WAD)

    def test_unrecognized_parameter(self):
        with self.assertRaises(UnrecognizedParam):
            self.engine.modify_parameters(GOV, "surplusBuffer", 1)
        with self.assertRaises(UnrecognizedParam):
            self.engine.modify_collateral_parameters(GOV, ETH, "liquidationPenalty", 1)

    def test_rejected_call_leaves_no_trace(self):
        before = self.engine.get_token_collateral(ETH, "alice")
        events = len(self.env.events)
        with self.assertRaises(ProtocolError):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 20 * WAD, 0)
        self.assertEqual(self.engine.get_token_collateral(ETH, "alice"), before)
        self.assertEqual(self.engine.get_safe(ETH, "alice").locked_collateral, 0)
        self.assertEqual(len(self.env.events), events)

    def test_uninitialized_type(self):
        with self.assertRaises(CollateralTypeNotInitialized):
            self.engine.modify_safe_collateralization("alice", "WBTC-A", "alice", "alice", "alice", WAD, 0)

    def test_transfer_safe_collateral_and_debt(self):
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)
        with self.assertRaises(NotSAFEAllowed):
            self.engine.transfer_safe_collateral_and_debt("alice", ETH, "alice", "bob", 5 * WAD, 500 * WAD)

        self.engine.approve_safe_modification("bob", "alice")
        self.engine.transfer_safe_collateral_and_debt("alice", ETH, "alice", "bob", 5 * WAD, 500 * WAD)
        self.assertEqual(self.engine.get_safe(ETH, "bob").generated_debt, 500 * WAD)
        self.assertEqual(self.engine.get_safe(ETH, "alice").locked_collateral, 5 * WAD)

        # Leaving 50 coins behind would be dusty
        with self.assertRaises(DustySAFEDebt):
            self.engine.transfer_safe_collateral_and_debt("alice", ETH, "alice", "bob", 0, 450 * WAD)
        check_identities(self, self.engine)

    def test_confiscation(self):
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)
        # Only authorized accounts may confiscate
        with self.assertRaises(Unauthorized):
            self.engine.confiscate_safe_collateral_and_debt("bob", ETH, "alice", "bob", "bob", -WAD, -WAD)

        self.engine.confiscate_safe_collateral_and_debt(
            GOV, ETH, "alice", "liquidator", "accounting", -4 * WAD, -400 * WAD
        )
        safe = self.engine.get_safe(ETH, "alice")
        self.assertEqual(safe.locked_collateral, 6 * WAD)
        self.assertEqual(safe.generated_debt, 600 * WAD)
        self.assertEqual(self.engine.get_token_collateral(ETH, "liquidator"), 4 * WAD)
        self.assertEqual(self.engine.get_debt_balance("accounting"), 400 * RAD)
        self.assertEqual(self.engine.global_unbacked_debt, 400 * RAD)
        # The coins already in circulation stay in the global debt
        self.assertEqual(self.engine.global_debt, 1000 * RAD)
        check_identities(self, self.engine)

    def test_settle_debt(self):
        self.engine.create_unbacked_debt(GOV, "accounting", "accounting", 50 * RAD)
        self.engine.settle_debt("accounting", 30 * RAD)
        self.assertEqual(self.engine.get_debt_balance("accounting"), 20 * RAD)
        self.assertEqual(self.engine.get_coin_balance("accounting"), 20 * RAD)
        self.assertEqual(self.engine.global_unbacked_debt, 20 * RAD)
        with self.assertRaises(ArithmeticUnderflow):
            self.engine.settle_debt("accounting", 21 * RAD)
        check_identities(self, self.engine)

    def test_update_accumulated_rate(self):
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)
        # 5% fee accrual
        self.engine.update_accumulated_rate(GOV, ETH, "surplus", RAY // 20)

        self.assertEqual(self.engine.get_collateral_data(ETH).accumulated_rate, RAY * 21 // 20)
        self.assertEqual(self.engine.get_coin_balance("surplus"), 50 * RAD)
        self.assertEqual(self.engine.global_debt, 1050 * RAD)
        check_identities(self, self.engine)

    def test_collateral_balance_never_negative(self):
        with self.assertRaises(ArithmeticUnderflow):
            self.engine.modify_collateral_balance(GOV, ETH, "alice", -11 * WAD)
        with self.assertRaises(ArithmeticUnderflow):
            self.engine.transfer_collateral("alice", ETH, "alice", "bob", 11 * WAD)
        with self.assertRaises(NotSAFEAllowed):
            self.engine.transfer_collateral("bob", ETH, "alice", "bob", WAD)

    def test_negative_transfers_are_rejected(self):
        with self.assertRaises(InvalidParameter):
            self.engine.transfer_collateral("alice", ETH, "alice", "bob", -WAD)
        with self.assertRaises(InvalidParameter):
            self.engine.transfer_internal_coins("alice", "alice", "bob", -RAD)
        self.assertEqual(self.engine.get_token_collateral(ETH, "alice"), 10 * WAD)
        self.assertEqual(self.engine.get_token_collateral(ETH, "bob"), 0)

    def test_is_safe_unsafe(self):
        self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", 10 * WAD, 1000 * WAD)
        self.assertFalse(self.engine.is_safe_unsafe(ETH, "alice"))
        self.engine.update_collateral_price(GOV, ETH, 99 * RAY, 99 * RAY)
        self.assertTrue(self.engine.is_safe_unsafe(ETH, "alice"))
        # No valid price means no liquidation
        self.engine.update_collateral_price(GOV, ETH, 0, 0)
        self.assertFalse(self.engine.is_safe_unsafe(ETH, "alice"))

    def test_disable_contract(self):
        self.engine.disable_contract(GOV)
        with self.assertRaises(ContractNotEnabled):
            self.engine.modify_safe_collateralization("alice", ETH, "alice", "alice", "alice", WAD, 0)


# One ledger operation: (kind, account index, amount in whole units)
operations = st.lists(
    st.tuples(
        st.sampled_from(["join", "exit", "lock", "free", "draw", "repay", "move", "confiscate", "accrue"]),
        st.integers(min_value=0, max_value=2),
        st.integers(min_value=1, max_value=500),
    ),
    max_size=25,
)


class TestLedgerIdentities(unittest.TestCase):

    @settings(max_examples=60, deadline=None)
    @given(operations)
    def test_identities_hold_for_any_sequence(self, ops):
        env, engine = build_engine()
        accounts = ["alice", "bob", "carol"]
        for kind, index, amount in ops:
            account = accounts[index]
            other = accounts[(index + 1) % 3]
            try:
                if kind == "join":
                    engine.modify_collateral_balance(GOV, ETH, account, amount * WAD)
                elif kind == "exit":
                    engine.modify_collateral_balance(GOV, ETH, account, -amount * WAD // 10)
                elif kind == "lock":
                    engine.modify_safe_collateralization(account, ETH, account, account, account, amount * WAD, 0)
                elif kind == "free":
                    engine.modify_safe_collateralization(account, ETH, account, account, account,
                                                         -amount * WAD // 10, 0)
                elif kind == "draw":
                    engine.modify_safe_collateralization(account, ETH, account, account, account,
                                                         0, amount * WAD)
                elif kind == "repay":
                    engine.modify_safe_collateralization(account, ETH, account, account, account,
                                                         0, -amount * WAD)
                elif kind == "move":
                    engine.transfer_internal_coins(account, account, other, amount * RAD)
                elif kind == "confiscate":
                    safe = engine.get_safe(ETH, account)
                    engine.confiscate_safe_collateral_and_debt(
                        GOV, ETH, account, "liquidator", "accounting",
                        -(safe.locked_collateral // 2), -(safe.generated_debt // 2),
                    )
                elif kind == "accrue":
                    engine.update_accumulated_rate(GOV, ETH, "surplus", amount * RAY // 10 ** 4)
            except ProtocolError:
                # Rejected operations must leave the books untouched
                pass
            check_identities(self, engine)


if __name__ == '__main__':
    unittest.main()
