from .registry import TerminalRegistry, TerminalSession

__all__ = ["TerminalRegistry", "TerminalSession"]
