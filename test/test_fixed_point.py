"""
Unit tests for the fixed-point arithmetic of the HAI protocol model.
"""

import unittest
import sys
import os

from hypothesis import given, settings
from hypothesis import strategies as st

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from fixed_point import (
    RAD, RAY, WAD, add_signed, rad_to_wad, rdiv, rmul, rpow, sub, wad_mul_ray_to_rad,
    wad_to_rad, wad_to_ray, ray_to_wad, wdiv, wmul,
)
from protocol_errors import ArithmeticUnderflow

amounts = st.integers(min_value=0, max_value=10 ** 12 * WAD)
# Per-second rates within roughly +-100% per year
rates = st.integers(min_value=RAY - 22 * 10 ** 18, max_value=RAY + 22 * 10 ** 18)
# Rates whose drift per second dwarfs the rounding error of rpow
drifting_rates = st.one_of(
    st.just(RAY),
    st.integers(min_value=RAY - 22 * 10 ** 18, max_value=RAY - 10 ** 18),
    st.integers(min_value=RAY + 10 ** 18, max_value=RAY + 22 * 10 ** 18),
)


class TestFixedPoint(unittest.TestCase):

    def test_scales(self):
        self.assertEqual(RAD, WAD * RAY)
        self.assertEqual(wad_to_ray(WAD), RAY)
        self.assertEqual(ray_to_wad(RAY), WAD)
        self.assertEqual(wad_to_rad(3 * WAD), 3 * RAD)
        self.assertEqual(rad_to_wad(3 * RAD), 3 * WAD)

    def test_mul_div_floor(self):
        self.assertEqual(wmul(3 * WAD, WAD // 2), 3 * WAD // 2)
        self.assertEqual(wdiv(WAD, 3 * WAD), WAD // 3)
        self.assertEqual(rmul(10, RAY // 3), 3)
        self.assertEqual(rdiv(2 * RAY, 3 * RAY), 2 * RAY // 3)

    def test_rpow_identities(self):
        self.assertEqual(rpow(5 * RAY, 0), RAY)
        self.assertEqual(rpow(0, 0), RAY)
        self.assertEqual(rpow(0, 5), 0)
        self.assertEqual(rpow(2 * RAY, 10), 1024 * RAY)
        self.assertEqual(rpow(RAY // 2, 3), RAY // 8)

    def test_rpow_other_base(self):
        self.assertEqual(rpow(2 * WAD, 3, WAD), 8 * WAD)

    def test_rpow_negative_exponent(self):
        with self.assertRaises(ValueError):
            rpow(RAY, -1)

    def test_rpow_rounds_half_up(self):
        # 1e-27 squared is below half a unit and rounds to zero
        self.assertEqual(rpow(1, 2), 0)
        # (RAY + 1)^2 = RAY + 2 after rounding
        self.assertEqual(rpow(RAY + 1, 2), RAY + 2)

    def test_add_signed(self):
        self.assertEqual(add_signed(10, -4), 6)
        self.assertEqual(add_signed(10, 5), 15)
        self.assertEqual(add_signed(10, -10), 0)
        with self.assertRaises(ArithmeticUnderflow):
            add_signed(10, -11)
        with self.assertRaises(ArithmeticUnderflow):
            sub(0, 1)

    def test_underflow_is_value_error(self):
        with self.assertRaises(ValueError):
            sub(1, 2)

    @given(amounts)
    def test_wad_ray_round_trip(self, amount):
        self.assertEqual(ray_to_wad(wad_to_ray(amount)), amount)
        self.assertEqual(rad_to_wad(wad_to_rad(amount)), amount)

    @given(amounts, rates)
    def test_wad_times_ray_is_rad(self, amount, rate):
        rad = wad_mul_ray_to_rad(amount, rate)
        self.assertEqual(rad, amount * rate)
        self.assertLessEqual(rad_to_wad(rad), rmul(amount, rate))

    @given(amounts, st.integers(min_value=1, max_value=10 ** 6 * WAD))
    def test_wmul_wdiv_never_overshoots(self, x, y):
        self.assertLessEqual(wmul(wdiv(x, y), y), x)

    @settings(max_examples=50)
    @given(rates, st.integers(min_value=0, max_value=10 ** 6), st.integers(min_value=0, max_value=10 ** 6))
    def test_rpow_compounds_additively(self, rate, a, b):
        # r^(a+b) == r^a * r^b up to rounding of a few units per step
        combined = rpow(rate, a + b)
        split = rmul(rpow(rate, a), rpow(rate, b))
        self.assertLessEqual(abs(combined - split), combined // 10 ** 18 + 100)

    @given(drifting_rates, st.integers(min_value=0, max_value=10 ** 5))
    def test_rpow_monotonic_in_time(self, rate, seconds):
        now = rpow(rate, seconds)
        later = rpow(rate, seconds + 1)
        if rate >= RAY:
            self.assertGreaterEqual(later, now)
        else:
            self.assertLessEqual(later, now)


if __name__ == '__main__':
    unittest.main()
