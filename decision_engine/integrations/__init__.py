"""decision_engine.integrations: external service gateway modules.

All outbound HTTP calls must go through a gateway in this package, never via
bare `requests` calls in services or blueprints. Every call is:
  - Authenticated (token injected by the gateway)
  - Time-bounded and retried on transient failures
  - Returned as a typed result object; gateways never raise

Current gateways:
  document_gateway.DocumentStoreGateway: hosted collaborative proposal documents
"""
