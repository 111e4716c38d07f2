"""
Authentication helpers for the storefront API.

Design goals:
- Password and Google sign-in resolve to the same user/session model.
- Opaque, server-side session tokens (revocable, unlike signed cookies).
- Cookie-based session (HttpOnly) for the same-origin storefront UI.
"""
