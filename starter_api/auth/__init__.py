"""Credential hashing, bearer tokens and the register/login flow."""
