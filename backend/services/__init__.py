"""
Services package - Business logic layer.

This package contains the dispatch business logic. It operates on injected
stores and transports and is decoupled from the HTTP/WebSocket layer.

Modules:
    - order_lifecycle: Order state machine, value types and errors
    - matching: Offer rounds, claims and re-offer
    - tracking: Location filter and track history
    - storage: Store interfaces and in-memory implementations
    - wiring: Builds the services from Django settings
"""
