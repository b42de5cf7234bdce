"""
Configuration management

Default settings plus optional JSON config file loading.
"""
import json
import logging
import os

logger = logging.getLogger(__name__)

# Columns kept by default when importing a request workbook
DEFAULT_VISIBLE_COLUMNS = [
    "Request ID", "Sample Name", "Description", "Variant", "Note to planer",
    "Additional Information", "Remark (Requester)", "Testing Condition",
    "Due finish", "Priority", "Purpose", "SDIDATAID",
]

DEFAULTS = {
    # None -> <data_folder>/.planner/planner.db, or result_cache/planner.db
    "store_db_path": None,
    "store_wal": True,
    # document store batch limit is 500, stay below it
    "batch_delete_size": 400,
    "visible_columns": DEFAULT_VISIBLE_COLUMNS,
    "log_level": "INFO",
}


def load_config(config_path: str = "config.json", data_folder: str = None) -> dict:
    """
    Load the config file, falling back to defaults when missing or unreadable

    Args:
        config_path: path of the JSON config file
        data_folder: shared data folder, used to place the database file

    Returns:
        config dict (defaults merged with file values)
    """
    config = DEFAULTS.copy()
    config["visible_columns"] = list(DEFAULT_VISIBLE_COLUMNS)

    try:
        if os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                user_config = json.load(f)
            # only known keys are honoured
            for key in DEFAULTS.keys():
                if key in user_config:
                    config[key] = user_config[key]
    except (OSError, ValueError) as e:
        logger.warning("config file %s unreadable, using defaults: %s", config_path, e)

    if config["store_db_path"] is None and data_folder:
        config["store_db_path"] = os.path.join(data_folder, ".planner", "planner.db")
    elif config["store_db_path"] is None:
        config["store_db_path"] = os.path.join("result_cache", "planner.db")

    try:
        config["batch_delete_size"] = max(1, int(config["batch_delete_size"]))
    except (TypeError, ValueError):
        logger.warning("invalid batch_delete_size %r, using default", config["batch_delete_size"])
        config["batch_delete_size"] = DEFAULTS["batch_delete_size"]

    return config
