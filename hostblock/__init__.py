"""
hostblock package - Hosts Blocklist Rule Database and Update Engine

Modules:
    atomic_file: Crash-safe single-writer/multiple-reader file replacement
    hosts: Hosts-file line parser
    config: Host sources and configuration load/save
    sources: Source location classification, cache naming, content grants
    errors: Error taxonomy, last-errors store, cancellation token
    item_updater: Fetch one source into its cache file
    update_worker: Concurrent update orchestrator
    rule_database: Published blocked-host snapshot and rebuild
    cli: Command-line front end
"""

__version__ = "1.0.0"
