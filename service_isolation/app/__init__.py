"""
Isolation Service package for the Tenancy Isolation Layer.

This package decides whether a caller positioned somewhere in the
Platform -> Tenant -> Organization -> Department -> User hierarchy may act
on a resource positioned elsewhere in it. It provides:

- app.main: IsolationService facade and the evaluate_access boundary.
- app.context: IsolationContext model and the context manager.
- app.access: Level comparison, containment, policy rules and decisions.
- app.cache: Partition keys, eviction strategies and the isolated cache.
- app.audit: Append-only audit trail with a fallback sink.
- app.monitor: Rolling-window anomaly detection and security events.

Guidelines:
- Decisions are deny-by-default; only invalid claims raise past the boundary.
- Audit and monitor failures never block authorization.
- Keep decisions observable (metrics + structured logs).
"""
