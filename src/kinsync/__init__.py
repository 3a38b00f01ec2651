"""kinsync - multi-provider identity resolution and synchronization for family trees.

Canonical person identities across FamilySearch, Ancestry, WikiTree and
23andMe, a cancellable rate-limited ancestor crawl, and field-level
reconciliation of provider data under local overrides.
"""

__version__ = "0.1.0"

# Lazy imports keep playwright out of the import path until it is needed
def __getattr__(name: str):
    if name == "IdentityResolver":
        from kinsync.identity import IdentityResolver
        return IdentityResolver
    if name == "SyncStore":
        from kinsync.store import SyncStore
        return SyncStore
    if name == "ReconciliationEngine":
        from kinsync.reconcile import ReconciliationEngine
        return ReconciliationEngine
    if name == "OperationController":
        from kinsync.operations import OperationController
        return OperationController
    if name == "AncestorCrawler":
        from kinsync.crawler import AncestorCrawler
        return AncestorCrawler
    if name == "SyncConfig":
        from kinsync.config import SyncConfig
        return SyncConfig
    if name == "scrapers":
        from kinsync import scrapers
        return scrapers
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
