"""
Session authentication for the portal API.

Design goals:
- Two login paths: federated OIDC (hosting environment only) and email/password demo login.
- Server-side sessions; the browser only holds a signed session id cookie.
- Federated tokens are refreshed on demand; a failed refresh means "log in again".
"""
