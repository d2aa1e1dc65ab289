"""Core account model: signers, hashing, host environment and contracts."""
