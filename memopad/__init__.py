"""
Memopad: a small memo board served over FastAPI.

Authentication, row storage and realtime change delivery are delegated to a
hosted backend platform (Supabase). This package wraps that platform's client
behind a small contract so the pages can run against an in-memory double in
development and tests.
"""
