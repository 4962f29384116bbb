"""
SAFE Saviour Model for the HAI Protocol.

A saviour is an external contract a SAFE owner may designate to attempt a
rescue when the SAFE is about to be liquidated. The liquidation engine calls
save_safe and then checks the SAFE again; saviours are treated as untrusted
code whose failures must never block a liquidation.

This module defines the interface the liquidation engine expects and a
reference saviour that tops up collateral from its own free balance.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from fixed_point import MAX_UINT, WAD
from protocol_errors import ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class SaviourResult:
    """What a saviour reports back after a rescue attempt."""
    ok: bool
    collateral_added_or_debt_repaid: int = 0
    liquidator_reward: int = 0


class SAFESaviour(Protocol):
    """Interface of a contract that can rescue SAFEs."""

    address: str

    def save_safe(self, liquidator: str, collateral_type: str, safe: Optional[str]) -> SaviourResult:
        ...


class CollateralTopUpSaviour:
    """
    Rescues SAFEs by locking extra collateral taken from the saviour's own
    free collateral balance in the SAFE engine.

    Locking collateral only reduces risk, so the SAFE owner does not need to
    approve the saviour; its funds must sit in its own free balance. It adds
    just enough collateral to bring the SAFE back to its liquidation ratio
    scaled by `target_ratio_buffer` (a WAD multiplier, 1.1 by default).
    """

    STATE_FIELDS = ("covered_safes",)

    def __init__(self, env, address, safe_engine, liquidation_engine_address, target_ratio_buffer=WAD * 11 // 10):
        self.env = env
        self.address = address
        self.safe_engine = safe_engine
        self.liquidation_engine_address = liquidation_engine_address
        self.target_ratio_buffer = target_ratio_buffer
        # (collateral type, safe) pairs this saviour agreed to protect
        self.covered_safes = set()
        env.register(self)

    def cover_safe(self, collateral_type, safe):
        self.covered_safes.add((collateral_type, safe))

    def uncover_safe(self, collateral_type, safe):
        self.covered_safes.discard((collateral_type, safe))

    def required_collateral(self, collateral_type, safe):
        """
        Returns how much collateral (WAD) must be added so the SAFE clears its
        liquidation price by the buffer. Zero if the price is invalid.
        """
        c_data = self.safe_engine.get_collateral_data(collateral_type)
        safe_data = self.safe_engine.get_safe(collateral_type, safe)
        if c_data.liquidation_price == 0:
            return 0

        target_debt_value = safe_data.generated_debt * c_data.accumulated_rate * self.target_ratio_buffer // WAD
        # Ceiling division so the result is never short by rounding
        needed_locked = -(-target_debt_value // c_data.liquidation_price)
        return max(needed_locked - safe_data.locked_collateral, 0)

    def save_safe(self, liquidator, collateral_type, safe):
        """
        Attempts to rescue a SAFE.

        When called by the liquidation engine with an empty collateral type it
        only proves that it implements the rescue interface.
        """
        if liquidator == self.liquidation_engine_address and collateral_type == "" and safe is None:
            return SaviourResult(True, MAX_UINT, MAX_UINT)

        if (collateral_type, safe) not in self.covered_safes:
            raise ProtocolError(f"SAFE {safe} is not covered by {self.address}")

        top_up = self.required_collateral(collateral_type, safe)
        if top_up == 0:
            return SaviourResult(False, 0, 0)

        available = self.safe_engine.get_token_collateral(collateral_type, self.address)
        if available < top_up:
            raise ProtocolError(f"Saviour {self.address} cannot cover SAFE {safe}")

        self.safe_engine.modify_safe_collateralization(
            self.address, collateral_type, safe, self.address, self.address, top_up, 0
        )
        logger.info("Saviour %s added %s collateral to SAFE %s", self.address, top_up, safe)
        return SaviourResult(True, top_up, 0)
