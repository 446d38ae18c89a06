"""auth/ -- Authentication and session-lifecycle package for Invoicer.

Components, leaf-first: RateLimiter (rate_limit.py), credential verification
(tokens.py), AccountLockoutTracker (lockout.py), RefreshTokenManager
(refresh.py), SessionIssuer (session.py). AccountStore (store.py) is the
persistence adapter they share.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
