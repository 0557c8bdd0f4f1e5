"""
Catalog of job-log messages.

All text written to the job log and report comes from here, keyed by Msg.
"""

from enum import Enum


class Msg(Enum):
    RUN_START = 'run_start'
    RUN_COMPLETE = 'run_complete'
    RUN_FAILED = 'run_failed'
    LOG_DIR_FALLBACK = 'log_dir_fallback'
    ROOT_MISSING = 'root_missing'
    HISTORY_UNAVAILABLE = 'history_unavailable'

    INVENTORY_FAILED = 'inventory_failed'
    INVENTORY_FOUND = 'inventory_found'
    SET_REMOVED = 'set_removed'
    SET_REMOVE_FAILED = 'set_remove_failed'
    ROTATION_DONE = 'rotation_done'

    DESTINATION_FAILED = 'destination_failed'
    ENGINE_SUBMIT = 'engine_submit'
    ENGINE_FAULT = 'engine_fault'
    ENGINE_NO_RESULT = 'engine_no_result'
    ENGINE_SUCCESS = 'engine_success'
    ENGINE_FAILED = 'engine_failed'

    COMPRESS_START = 'compress_start'
    COMPRESS_SUCCESS = 'compress_success'
    COMPRESS_WARNING = 'compress_warning'
    COMPRESS_FAULT = 'compress_fault'
    COMPRESS_NO_SOURCE = 'compress_no_source'
    SOURCE_REMOVE_FAILED = 'source_remove_failed'

    SYNC_NOT_CONFIGURED = 'sync_not_configured'
    SYNC_UNREACHABLE = 'sync_unreachable'
    SYNC_IN_SYNC = 'sync_in_sync'
    SYNC_START = 'sync_start'
    SYNC_SUCCESS = 'sync_success'
    SYNC_MISMATCH = 'sync_mismatch'
    SYNC_FAULT = 'sync_fault'


CATALOG = {
    Msg.RUN_START: "Starting {tool} for {set_name} (tier: {tier}, type: {mode}, retention: {retention})",
    Msg.RUN_COMPLETE: "Run finished with state {state}",
    Msg.RUN_FAILED: "Run failed unexpectedly: {error}",
    Msg.LOG_DIR_FALLBACK: "Cannot create log directory {path} ({error}); logging to {fallback}",
    Msg.ROOT_MISSING: "Backup root not found: {root}",
    Msg.HISTORY_UNAVAILABLE: "Run history unavailable ({error}); previous engine job unknown",

    Msg.INVENTORY_FAILED: "Cannot list backup sets in {root}: {error}",
    Msg.INVENTORY_FOUND: "Found {count} existing {tier} backup set(s), keeping at most {keep}",
    Msg.SET_REMOVED: "Removed old backup set: {name}",
    Msg.SET_REMOVE_FAILED: "Failed to remove backup set {name}: {error}",
    Msg.ROTATION_DONE: "Rotation complete: {removed} removed, {failed} failed",

    Msg.DESTINATION_FAILED: "Cannot create backup destination {destination}: {error}",
    Msg.ENGINE_SUBMIT: "Starting {mode} backup to {destination}",
    Msg.ENGINE_FAULT: "Backup engine could not run: {error}",
    Msg.ENGINE_NO_RESULT: "Cannot determine backup result - assume failure",
    Msg.ENGINE_SUCCESS: "Backup completed (started {start}, ended {end})",
    Msg.ENGINE_FAILED: "Backup engine reported error code {code}; failure log: {failure_log}",

    Msg.COMPRESS_START: "Compressing {source} to {archive}",
    Msg.COMPRESS_SUCCESS: "Compression completed: {archive}",
    Msg.COMPRESS_WARNING: "Archiver reported a problem ({detail}); output saved to {side_log}",
    Msg.COMPRESS_FAULT: "Compression failed: {error}",
    Msg.COMPRESS_NO_SOURCE: "Nothing to compress: {source} does not exist",
    Msg.SOURCE_REMOVE_FAILED: "Failed to remove compressed source {source}: {error}",

    Msg.SYNC_NOT_CONFIGURED: "Synchronization enabled but no destination configured",
    Msg.SYNC_UNREACHABLE: "Synchronization destination not reachable: {destination}",
    Msg.SYNC_IN_SYNC: "Destination {destination} already synchronized",
    Msg.SYNC_START: "Mirroring {source} to {destination}",
    Msg.SYNC_SUCCESS: "Synchronization completed; mirror log: {mirror_log}",
    Msg.SYNC_MISMATCH: "Source and destination differ after mirroring; check {mirror_log}",
    Msg.SYNC_FAULT: "Mirror failed: {error}; check {mirror_log}",
}


def render(msg: Msg, **fields) -> str:
    """Format the template for `msg` with `fields`."""
    return CATALOG[msg].format(**fields)
