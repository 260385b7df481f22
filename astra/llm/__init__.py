"""Model access package.

Architectural role:
    Provides provider configuration, the HTTP transport for chat completions, and
    the async service facade used by orchestration layers.

Module split:
    - `provider_config`: environment-driven provider, model, and runtime settings.
    - `client`: blocking HTTP transport, typed transport errors.
    - `service`: `AIServiceProtocol` and its thread-offloading implementation.
"""
