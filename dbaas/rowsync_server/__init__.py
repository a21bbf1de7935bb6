"""
RowSync Server - authorized mutations and filtered change feeds for synced resources.

This package keeps client-side caches of relational resources consistent
with a single authoritative store:
- ResourceDescriptors define identity, shapes and access predicates
- The MutationGateway performs authorized, transactional writes and
  returns the transaction id of each commit
- The ChangeFeedProxy forwards feed subscriptions upstream with a
  session-derived row filter injected
- The ChangeFeedService streams committed changes tagged with txids

Architecture:
    ┌─────────────┐  POST/PUT/DELETE  ┌─────────────────┐   txn   ┌─────────┐
    │ SDK         │──────────────────▶│ MutationGateway │───────▶│  Store  │
    │ Synced      │                   └─────────────────┘         │ (rows + │
    │ Collection  │  GET (subscribe)  ┌─────────────────┐         │ outbox) │
    │             │──────────────────▶│ ChangeFeedProxy │         └────┬────┘
    └─────────────┘                   └────────┬────────┘              │
           ▲                                   │ where=<row filter>    │
           │                                   ▼                       │
           │                          ┌─────────────────┐              │
           └──────────────────────────│ChangeFeedService│◀─────────────┘
                  change messages     └─────────────────┘
                  tagged with txids

Invariants:
    - Every committed write is recorded in the change log in the same transaction
    - A txid identifies exactly one committed transaction
    - Access predicates are evaluated before any store write
    - Row identities are never reused within a resource

How to change safely:
    - Keep the feed wire format backward compatible with deployed SDKs
    - New access decision variants must be handled by the gateway and proxy
    - Never accept a row filter from a client request
    - Never serve the change feed to clients without the feed secret
"""

from ._version import __version__

__all__ = ["__version__"]
