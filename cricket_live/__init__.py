"""
Live cricket scoring engine: ball-by-ball ledger, innings state, player
figures and fantasy points for the cricket platform backend.
"""
