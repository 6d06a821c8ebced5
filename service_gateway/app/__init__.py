"""
Gantz tool gateway package.

The gateway serves versioned tools to AI agents over HTTP, enforcing:
- Authentication: opaque bearer tokens with scopes
- Deadlines: cascading timeout budgets for every tool call
- Caching: memoized results for idempotent tools, with singleflight

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.auth: Token store.
- app.tools: Tool definitions, registry, validation and manifest loading.
- app.execution: Budgets, handlers and the executor.
- app.caching: Result cache, backends and singleflight.
- app.domain: Dispatcher, auth helpers and wire schemas.
"""
