"""
Session client package for the calorie tracker API.

Keeps an authenticated session alive on behalf of a client application:
- Storage: access/refresh token pair behind one TokenStore
- Validation: structural JWT checks and expiry windows
- Refresh: single-flight token refresh with backoff and an attempt cap
- Transport: credentialed requests with one transparent retry on 401
- Housekeeping: periodic cleanup and pre-emptive refresh

Structure:
- app.main: SessionClient facade and create_session_client().
- app.storage, app.validation, app.refresh, app.transport, app.housekeeping.
"""
