"""
Vesting ledger: how much of a stream has vested at a given moment.

Linear vesting from start at a fixed rate, gated by a hard cliff. Nothing
vests until strictly after the cliff; once past it, vesting is retroactive
to start. Pure integer arithmetic.
"""


def vested_amount(start_unix: int, cliff_unix: int, rate_sats_per_sec: int,
                  total_amount_sats: int, at: int) -> int:
    """
    Amount vested at `at`.

    Examples (start=1000, cliff=1100, rate=100, total=100000):
    - at=1100: 0 (cliff is exclusive)
    - at=1200: (1200 - 1000) * 100 = 20000
    - at=3000: capped at 100000
    """
    if at <= cliff_unix:
        return 0
    elapsed = max(0, int(at) - int(start_unix))
    return min(int(rate_sats_per_sec) * elapsed, int(total_amount_sats))


def claimable(stream, at: int) -> int:
    """Vested-but-not-yet-committed amount for a stream at `at`."""
    vested = vested_amount(
        stream.start_unix,
        stream.cliff_unix,
        stream.rate_sats_per_sec,
        stream.total_amount_sats,
        at,
    )
    return max(vested - stream.streamed_commitment_sats, 0)
