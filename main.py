from src.app_factory import create_app


if __name__ == "__main__":
    """
    Dedicated entrypoint for the appointment engine HTTP API.
    Run the reconciliation sweep from `reconcile_worker.py` (cron) in a separate process.
    """
    app = create_app()
    app.run(host="0.0.0.0", port=5001, debug=True)
