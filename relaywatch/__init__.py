"""
RELAYWATCH — IBC Relayer Monitoring Engine

Sends small probe transfers over an IBC channel, watches for each packet to
be delivered on the destination ledger, attributes the delivery to the
relayer that carried it, and keeps per-relayer reliability metrics.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          PROBE SESSION                                   │
    │                                                                          │
    │  ORCHESTRATION                                                           │
    │    session.py     Single, batch, stability and continuous probe runs    │
    │    health.py      Concurrent liveness check of both ledgers             │
    │                                                                          │
    │  DETECTION                                                               │
    │    initiator.py   MsgTransfer construction, fees, serialized broadcast  │
    │    sequence.py    Packet sequence recovery from receipts and raw logs   │
    │    tracker.py     Deadline-bounded polling over ranked strategies       │
    │    strategies.py  Destination search, source proof, block scan          │
    │    identity.py    Relayer address and memo label resolution             │
    │                                                                          │
    │  RECORDS                                                                 │
    │    models.py      Attempts, acknowledgements, observations, metrics     │
    │    store.py       Schema-checked JSON log with atomic snapshots         │
    │    metrics.py     Per-relayer aggregation and run summary               │
    │                                                                          │
    │  PLUMBING                                                                │
    │    clients.py     CometBFT RPC client and in-memory ledger doubles      │
    │    txcodec.py     Protobuf wire decoding for transactions and queries   │
    │    config.py      YAML + environment configuration                      │
    │    observability.py  Structured logging with correlation ids            │
    │    errors.py      Error taxonomy                                        │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Failure Semantics
─────────────────

    A probe always produces exactly one observation. Submission failures
    record zero latency, an unrecoverable packet sequence records zero
    latency, and acknowledgement timeouts record the full wait budget.
    Only successful observations carry a measured latency.

Copyright © 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"


# Lazy exports
def __getattr__(name):
    """Lazy import RELAYWATCH modules on first access."""

    if name in ("ProbeSession", "GracefulStop", "ContinuousRunStats", "SeriesResult"):
        from relaywatch import session
        return getattr(session, name)

    if name in ("TransferInitiator", "MsgTransfer", "FixedFee", "UnitPriceFee", "AutoFee"):
        from relaywatch import initiator
        return getattr(initiator, name)

    if name in ("AcknowledgementTracker",):
        from relaywatch import tracker
        return getattr(tracker, name)

    if name in ("DestinationSearchStrategy", "SourceProofStrategy", "BlockScanStrategy"):
        from relaywatch import strategies
        return getattr(strategies, name)

    if name in ("SequenceExtractor", "SequencePattern"):
        from relaywatch import sequence
        return getattr(sequence, name)

    if name in ("IdentityResolver", "ProbeMarker", "normalize_label"):
        from relaywatch import identity
        return getattr(identity, name)

    if name in ("TestLogStore",):
        from relaywatch import store
        return getattr(store, name)

    if name in ("MetricsAggregator",):
        from relaywatch import metrics
        return getattr(metrics, name)

    if name in ("RelayObservation", "RelayerMetrics", "AcknowledgementRecord",
                "TransferAttempt", "SubmissionResult", "RelayIdentity"):
        from relaywatch import models
        return getattr(models, name)

    if name in ("CometRpcClient", "MockLedger", "MockSigner"):
        from relaywatch import clients
        return getattr(clients, name)

    if name in ("LedgerHealthChecker", "ChannelChecker"):
        from relaywatch import health
        return getattr(health, name)

    if name in ("ConfigManager", "RelayWatchConfig", "get_config"):
        from relaywatch import config
        return getattr(config, name)

    if name in ("configure_logging", "get_logger"):
        from relaywatch import observability
        return getattr(observability, name)

    raise AttributeError(f"module 'relaywatch' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Orchestration
    "ProbeSession",
    "GracefulStop",
    "ContinuousRunStats",
    "SeriesResult",
    "LedgerHealthChecker",
    "ChannelChecker",
    # Detection
    "TransferInitiator",
    "MsgTransfer",
    "FixedFee",
    "UnitPriceFee",
    "AutoFee",
    "AcknowledgementTracker",
    "DestinationSearchStrategy",
    "SourceProofStrategy",
    "BlockScanStrategy",
    "SequenceExtractor",
    "SequencePattern",
    "IdentityResolver",
    "ProbeMarker",
    "normalize_label",
    # Records
    "TestLogStore",
    "MetricsAggregator",
    "RelayObservation",
    "RelayerMetrics",
    "AcknowledgementRecord",
    "TransferAttempt",
    "SubmissionResult",
    "RelayIdentity",
    # Plumbing
    "CometRpcClient",
    "MockLedger",
    "MockSigner",
    "ConfigManager",
    "RelayWatchConfig",
    "get_config",
    "configure_logging",
    "get_logger",
]
