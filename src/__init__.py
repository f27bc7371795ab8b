"""
src package for mt4-file-bridge.

- bridge: file-based command/response bridge to the MT4 terminal
"""
__all__ = [
    "bridge",
]
