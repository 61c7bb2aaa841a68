"""taskcommand_shared — Shared layer for the TaskCommand task-completion gateway.

Provides:
    - Gateway configuration loaded once per cold start
    - Bearer-token auth gate backed by a pluggable identity validator
    - Remote task stores with conditional (version-tag) writes
    - HTTP response helpers with CORS and the gateway error taxonomy
"""

__version__ = "1.0.0"
