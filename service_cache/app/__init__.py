"""
Route cache service package.

The engine fronts route handlers, deciding per request whether to:
- Serve a stored response (with its ETag)
- Answer 304 Not Modified when the client already holds the current ETag
- Let the request proceed and capture the response for later reuse

Structure:
- app.main: demo FastAPI app, routes, and middleware wiring.
- app.caching: settings, fingerprinting, gateways, etag negotiation,
  response interception, tag index and the engine handle.
"""
