"""Identity and relationship collaborator.

The chat core only reads identities and the friend graph through the
``IdentityStore`` interface. ``InMemoryIdentityStore`` is the bundled
implementation used when no external store is configured.

Services:
    - IdentityStore: Async read interface consumed by the fanout router.
    - InMemoryIdentityStore: Process-local profiles and friend graph.
"""
