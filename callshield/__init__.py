"""callshield: response cache and admission control for metered AI upstreams."""

__version__ = "1.0.0"
