"""
Fixed-Point Arithmetic for the HAI Protocol model.

All protocol quantities are plain integers interpreted at one of three scales:

- WAD (10**18): whole-unit amounts such as collateral and normalized debt
- RAY (10**27): rates, ratios and prices
- RAD (10**45): precision-amplified coin amounts, the product of a WAD and a RAY

The NewType tags below carry the scale through signatures so that mixing scales
is visible at the call site. Conversions between scales go through the named
helpers in this module rather than ad-hoc multiplications.
"""

from typing import NewType

from protocol_errors import ArithmeticUnderflow

Wad = NewType("Wad", int)
Ray = NewType("Ray", int)
Rad = NewType("Rad", int)

WAD = 10 ** 18
RAY = 10 ** 27
RAD = 10 ** 45

# Returned by a saviour's capability probe
MAX_UINT = 2 ** 256 - 1


def wmul(x: int, y: int) -> int:
    """Multiplies two numbers where the second is at WAD scale."""
    return x * y // WAD


def wdiv(x: int, y: int) -> int:
    """Divides x by a WAD-scaled y, keeping x's scale."""
    return x * WAD // y


def rmul(x: int, y: int) -> int:
    """Multiplies two numbers where the second is at RAY scale."""
    return x * y // RAY


def rdiv(x: int, y: int) -> int:
    """Divides x by a RAY-scaled y, keeping x's scale."""
    return x * RAY // y


def rpow(x: int, n: int, base: int = RAY) -> int:
    """
    Raises a fixed-point number to an integer power.

    Uses exponentiation by squaring, rounding half up after every
    multiplication. Compounding a per-second rate over a period is the main
    use: rpow(rate, seconds) is the multiplier accumulated over those seconds.

    Args:
        x: Base, scaled by `base`
        n: Non-negative integer exponent
        base: Fixed-point scale of x and of the result

    Returns:
        x ** n at the same scale
    """
    if n < 0:
        raise ValueError("Exponent must be non-negative")
    if x == 0:
        return base if n == 0 else 0

    z = base if n % 2 == 0 else x
    half = base // 2
    n //= 2
    while n:
        x = (x * x + half) // base
        if n % 2:
            z = (z * x + half) // base
        n //= 2
    return z


# --- Scale conversions ---

def wad_to_ray(value: Wad) -> Ray:
    return Ray(value * 10 ** 9)


def ray_to_wad(value: Ray) -> Wad:
    """Truncates a RAY to WAD precision."""
    return Wad(value // 10 ** 9)


def wad_to_rad(value: Wad) -> Rad:
    return Rad(value * RAY)


def rad_to_wad(value: Rad) -> Wad:
    """Truncates a RAD to WAD precision."""
    return Wad(value // RAY)


def wad_mul_ray_to_rad(amount: Wad, rate: Ray) -> Rad:
    """Scales a WAD amount by a RAY rate, producing a RAD."""
    return Rad(amount * rate)


def add_signed(value: int, delta: int) -> int:
    """
    Applies a signed delta to an unsigned quantity.

    Raises:
        ArithmeticUnderflow: If the result would be negative
    """
    result = value + delta
    if result < 0:
        raise ArithmeticUnderflow(f"Underflow applying {delta} to {value}")
    return result


def sub(value: int, amount: int) -> int:
    """Subtracts without allowing the result to go negative."""
    return add_signed(value, -amount)
