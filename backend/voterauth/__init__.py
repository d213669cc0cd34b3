"""
Biometric verification core for voter authentication.

Liveness challenge state machine, face-encoding matcher and the
orchestrator that turns both into a single accept/reject verdict.
"""

__version__ = "1.0.0"
