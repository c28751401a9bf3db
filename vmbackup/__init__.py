"""
VM backup orchestration: delta chains, merges, retention and rollback.
"""
__version__ = "1.0.0"
