"""Random hardware (MAC) address generation."""

import os

_ADDRESS_LENGTH = 6


def new_hardware_addr() -> bytes:
    """Return a random six-byte MAC address that is locally administered and unicast."""
    try:
        address = bytearray(os.urandom(_ADDRESS_LENGTH))
    except OSError as exc:
        raise RuntimeError(f"could not generate random MAC address: {exc}") from exc

    # Clear the multicast bit and set the locally-administered bit.
    address[0] = (address[0] & 0xFE) | 0x02
    return bytes(address)