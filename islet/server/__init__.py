"""Hook ingress server, agent-side emitter and local API."""
