"""
Shared session-cookie policy.

Why:
    The session cookie is set by the confirmation callback, the token
    exchange and cleared by logout; all three must agree on its flags.

Design:
    Pure function of the environment string so tests can assert the policy
    without building a response.
"""

from __future__ import annotations


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags, identical in every environment.

    Returns a mapping with keys:
      - secure: True
      - samesite: "lax"  # the confirmation link is a cross-site top-level navigation
    """
    # "strict" would drop the cookie set by the confirmation redirect when the
    # user opens the link from a webmail client.
    return {"secure": True, "samesite": "lax"}
