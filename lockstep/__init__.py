"""Two-ledger asset bridge: lock commitments, merkle proofs and the relay pipeline."""

__version__ = "0.3.0"
