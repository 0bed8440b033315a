"""
starter_api: REST API starter.

Provides:
  • Argon2id credential hashing (legacy bcrypt hashes still verify)
  • HS256 JWT issuance & verification
  • Per-client token-bucket rate limiting
  • Register / Login / Me routes on a single ``users`` table
"""

__version__ = "0.1.0"
