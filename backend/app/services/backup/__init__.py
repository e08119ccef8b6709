"""Backup, restore and archive catalog services."""
from app.services.backup.catalog import BackupCatalog, BackupEntry
from app.services.backup.encoder import CreateResult, SnapshotEncoder
from app.services.backup.formats import FormatKind, SnapshotContents, identify, normalize, read_metadata
from app.services.backup.restore import RestoreEngine, RestoreReport

backup_catalog = BackupCatalog()
snapshot_encoder = SnapshotEncoder()
restore_engine = RestoreEngine()

__all__ = [
    "BackupCatalog", "BackupEntry", "CreateResult", "SnapshotEncoder",
    "FormatKind", "SnapshotContents", "identify", "normalize", "read_metadata",
    "RestoreEngine", "RestoreReport",
    "backup_catalog", "snapshot_encoder", "restore_engine",
]
