"""QuarryRunner - sandboxed code execution and practice verdicts for CodeQuarry lessons."""

__version__ = "1.0.0"
