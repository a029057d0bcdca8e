"""Query rewriting (label injection) and upstream forwarding."""
