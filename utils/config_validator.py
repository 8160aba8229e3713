def validate_config(config: dict):
    required_keys = [
        "BROKER",
        "MASTER",
        "FETCH",
        "FANOUT",
        "LEDGER",
    ]

    missing = [k for k in required_keys if k not in config or not config[k]]
    if missing:
        raise ValueError(f"Missing required configuration keys: {missing}")

    for key in required_keys:
        if not isinstance(config[key], dict):
            raise TypeError(f"{key} must be a dictionary.")

    if not config["MASTER"].get("account_id"):
        raise ValueError("MASTER.account_id must be set.")

    if not config["BROKER"].get("order_url"):
        raise ValueError("BROKER.order_url must be set.")

    if int(config["FETCH"].get("max_attempts", 3)) < 1:
        raise ValueError("FETCH.max_attempts must be >= 1.")

    if int(config["FANOUT"].get("max_concurrency", 1)) < 1:
        raise ValueError("FANOUT.max_concurrency must be >= 1.")
