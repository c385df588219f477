"""Static reference tables bundled with the collector.

These tables are data, not configuration. They approximate vendor
specifications by matching substrings of the upper-cased device name and
will drift as new hardware ships; review them independently of the logic
that reads them and bump ``REFERENCE_VERSION`` on every change.

Order is significant in both tables: the first matching row wins, so more
specific patterns (Ti/SUPER/memory-size variants) sit above their base
model. Overlaps such as ``"A40"`` inside ``"A4000"`` are kept as listed.
"""

from __future__ import annotations

REFERENCE_VERSION = "2024.1"

UNKNOWN_ARCHITECTURE = "Unknown"

# (name substrings, architecture family)
ARCHITECTURE_PATTERNS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("RTX 40", "RTX 4", "L40", "L4"), "Ada Lovelace"),
    (("H100", "H200"), "Hopper"),
    (
        ("RTX 30", "RTX 3", "A100", "A40", "A30", "A10",
         "A6000", "A5000", "A4000", "A2000"),
        "Ampere",
    ),
    (("RTX 20", "RTX 2", "GTX 16", "T1000", "T2000", "T600"), "Turing"),
    (("GTX 10", "TITAN X", "P100", "P40", "P6"), "Pascal"),
    (("GTX 9", "TITAN M", "M60", "M40"), "Maxwell"),
    (("GTX 7", "GTX 6", "K80", "K40"), "Kepler"),
    (("V100",), "Volta"),
)

# Peak FP32 throughput in TFLOPs.
# (substrings that must all be present, substrings of which one must be present, TFLOPs)
PEAK_TFLOPS: tuple[tuple[tuple[str, ...], tuple[str, ...], float], ...] = (
    # Hopper
    (("H100",), ("SXM", "HBM3"), 67.0),
    (("H100",), (), 51.0),
    (("H200",), (), 67.0),
    # Ada Lovelace
    (("RTX 4090",), (), 82.6),
    (("RTX 4080", "SUPER"), (), 52.2),
    (("RTX 4080",), (), 48.7),
    (("RTX 4070", "TI", "SUPER"), (), 44.1),
    (("RTX 4070", "TI"), (), 40.1),
    (("RTX 4070", "SUPER"), (), 35.5),
    (("RTX 4070",), (), 29.1),
    (("RTX 4060", "TI"), (), 22.1),
    (("RTX 4060",), (), 15.1),
    (("L40S",), (), 91.6),
    (("L40",), (), 90.5),
    (("L4",), (), 30.3),
    # Ampere
    (("A100",), ("80GB", "SXM"), 19.5),
    (("A100",), (), 19.5),
    (("A40",), (), 37.4),
    (("A30",), (), 10.3),
    (("A10", "A10G"), (), 31.2),
    (("A10",), (), 31.2),
    (("A6000",), (), 38.7),
    (("A5000",), (), 27.8),
    (("A4000",), (), 19.2),
    (("A2000",), (), 8.0),
    (("RTX 3090", "TI"), (), 40.0),
    (("RTX 3090",), (), 35.6),
    (("RTX 3080", "TI"), (), 34.1),
    (("RTX 3080",), (), 29.8),
    (("RTX 3070", "TI"), (), 21.8),
    (("RTX 3070",), (), 20.3),
    (("RTX 3060", "TI"), (), 16.2),
    (("RTX 3060",), (), 13.0),
    # Turing
    (("RTX 2080", "TI"), (), 13.4),
    (("RTX 2080", "SUPER"), (), 11.2),
    (("RTX 2080",), (), 10.1),
    (("RTX 2070", "SUPER"), (), 9.1),
    (("RTX 2070",), (), 7.5),
    (("RTX 2060", "SUPER"), (), 7.2),
    (("RTX 2060",), (), 6.5),
    # Volta
    (("V100",), ("32GB", "SXM"), 15.7),
    (("V100",), (), 14.0),
    (("TITAN V",), (), 15.0),
    # Pascal
    (("P100",), (), 9.3),
    (("GTX 1080", "TI"), (), 11.3),
    (("GTX 1080",), (), 8.9),
    (("GTX 1070", "TI"), (), 8.1),
    (("GTX 1070",), (), 6.5),
    (("GTX 1060",), (), 4.4),
    (("TITAN X", "PASCAL"), (), 11.0),
    (("TITAN X",), (), 6.1),
)

BRAND_NAMES: dict[int, str] = {
    0: "Unknown",
    1: "Quadro",
    2: "Tesla",
    3: "NVS",
    4: "GRID",
    5: "GeForce",
    6: "Titan",
    7: "NVIDIA vApps",
    8: "NVIDIA VPC",
    9: "NVIDIA VCS",
    10: "NVIDIA VWS",
    11: "NVIDIA vGaming",
}

COMPUTE_MODE_NAMES: dict[int, str] = {
    0: "Default",
    1: "Exclusive Thread",
    2: "Prohibited",
    3: "Exclusive Process",
}

# NVML clocks throttle reason bits, lowest bit first.
THROTTLE_REASONS: tuple[tuple[int, str], ...] = (
    (0x0000000000000001, "GPU Idle"),
    (0x0000000000000002, "App Settings"),
    (0x0000000000000004, "SW Power Cap"),
    (0x0000000000000008, "HW Slowdown"),
    (0x0000000000000020, "SW Thermal"),
    (0x0000000000000040, "HW Thermal"),
    (0x0000000000000080, "Power Brake"),
)


def detect_architecture(name: str) -> str:
    """Map a device name to its architecture family, or ``"Unknown"``."""
    upper = name.upper()
    for patterns, arch in ARCHITECTURE_PATTERNS:
        if any(p in upper for p in patterns):
            return arch
    return UNKNOWN_ARCHITECTURE


def lookup_peak_tflops(name: str) -> float:
    """Return the reference FP32 peak for a device name, ``0.0`` when unknown."""
    upper = name.upper()
    for required, any_of, tflops in PEAK_TFLOPS:
        if not all(p in upper for p in required):
            continue
        if any_of and not any(p in upper for p in any_of):
            continue
        return tflops
    return 0.0


def brand_name(brand: int) -> str:
    return BRAND_NAMES.get(brand, f"Brand {brand}")


def compute_mode_name(mode: int) -> str:
    return COMPUTE_MODE_NAMES.get(mode, f"Mode {mode}")


def decode_throttle_reasons(mask: int) -> tuple[str, ...]:
    return tuple(label for bit, label in THROTTLE_REASONS if mask & bit)
