# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit WebDAV passwords. They are kept in the credential store
(<config_dir>/credentials.json, mode 0600), never in .env.

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "MDTASKS_APP_NAME": "App display name (default: mdtasks).",
    "MDTASKS_LOG_LEVEL": "Console logging level (default: INFO).",
    # Paths
    "MDTASKS_CONFIG_DIR": "Workspace registry + credentials directory (default: ~/.config/mdtasks).",
    "MDTASKS_LOG_DIR": "Log file directory (default: <config_dir>/logs).",
    # Transport
    "MDTASKS_TRANSPORT_TIMEOUT_SECONDS": "Hard timeout for every remote call (default: 20).",
    "MDTASKS_CONNECT_TIMEOUT_SECONDS": "TCP connect timeout (default: 5).",
    # Retry / backoff
    "MDTASKS_RETRY_BASE_SECONDS": "First backoff delay (default: 1).",
    "MDTASKS_RETRY_FACTOR": "Backoff multiplier (default: 2).",
    "MDTASKS_RETRY_CAP_SECONDS": "Longest backoff delay (default: 30).",
    "MDTASKS_RETRY_MAX_ATTEMPTS": "Attempts before an operation is queued offline (default: 5).",
    # Background sync
    "MDTASKS_SYNC_INTERVAL_SECONDS": "Period of the background sync loop (default: 300).",
}
