"""
Ballot Agent
Autonomous governance voter: watches proposal approvals on-chain, asks an
inference model for a recommendation, and casts one vote per proposal
through a remote signer.
"""

__version__ = "1.0.0"
