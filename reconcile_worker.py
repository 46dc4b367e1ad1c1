import logging

from src.app_factory import create_app
from src.services.reconciler import reconcile


if __name__ == "__main__":
    """
    Dedicated entrypoint for one reconciliation sweep.
    Schedule it externally (cron, k8s CronJob) every minute or so;
    it keeps no timers of its own.
    """
    app = create_app()
    with app.app_context():
        summary = reconcile()
    logging.getLogger("reconcile_worker").info(f"[reconcile_worker] done: {summary}")
