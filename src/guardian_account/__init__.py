"""
Guardian Account - Smart-Contract Wallet Authorization Core

Authorization and key-recovery core of a smart-contract wallet account.

Main Components:
- Signers: Polymorphic signer kinds (secp256k1, secp256r1, WebAuthn, SIWS) reduced to GUIDs
- Signature Validation: Owner-only or owner+guardian signature policy
- Escape: Time-locked, attempt-throttled owner/guardian key replacement
- External Recovery: Reusable escape component for signer-list accounts
- Outside Execution: Replay-protected, time-windowed delegated calls

For design notes, see DESIGN.md
"""

__version__ = "0.1.0"
__author__ = "Guardian Account Development Team"

__all__ = []
