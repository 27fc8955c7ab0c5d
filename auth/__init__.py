"""auth/ -- Accounts, token lifecycle, and OAuth identity linking for CaptionMe.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, ratelimit/, media/, or waitlist/.
api/ imports from auth/, not the other way around.
"""
