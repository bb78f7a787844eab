"""
Licensing Kernel

A role-gated workflow core for licensing applications with:
- An ordered phase pipeline and per-phase role gate
- Append-only, hash-chained history that replays to the current status
- Dual-control change requests for protected fields
- At most one approved application per asset token
"""

__version__ = "0.1.0"
