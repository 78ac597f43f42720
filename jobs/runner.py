import os, logging, sys, argparse
from datetime import datetime, timezone

from rules.sources import domain_names, load_domain

log = logging.getLogger("runner")

# domain key -> predicate on the current UTC hour
SCHEDULE = {
    "cannabis_hemp": lambda hour: hour % 6 == 0,
    "caselaw": lambda hour: hour == 3,
    "kratom": lambda hour: hour == 4,
    "kava": lambda hour: hour == 5,
    "federal_register": lambda hour: True,
}


def enabled_domains():
    wanted = [d.strip() for d in (os.getenv("POLLER_DOMAINS") or "").split(",") if d.strip()]
    names = domain_names()
    return [n for n in names if n in wanted] if wanted else names


def due_domains(now: datetime | None = None, run_all: bool = False):
    now = now or datetime.now(timezone.utc)
    out = []
    for name in enabled_domains():
        due = SCHEDULE.get(name)
        if run_all or (due is not None and due(now.hour)):
            out.append(name)
    return out


def run_domains(names, store_factory=None, poll=None):
    """Run each poller in turn; one failure does not stop the rest. Returns failed names."""
    from api.db import InstrumentStore
    from jobs.poll import run_poller

    store_factory = store_factory or InstrumentStore
    poll = poll or run_poller
    failed = []
    for name in names:
        try:
            summary = poll(load_domain(name), store_factory())
            log.info("Poller %s finished: %s", name, summary.to_response())
        except Exception:
            log.exception("Poller %s failed", name)
            failed.append(name)
    return failed


def main(argv=None):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    ap = argparse.ArgumentParser(description="Run the pollers due at this UTC hour.")
    ap.add_argument("--all", action="store_true", help="ignore the schedule and run every poller")
    args = ap.parse_args(argv)

    try:
        from api.db import require_write_access
        require_write_access()
        names = due_domains(run_all=args.all)
    except Exception:
        logging.exception("Runner configuration error")
        return 2
    if not names:
        logging.info("No pollers due this hour; nothing to run. Exiting 0.")
        return 0

    logging.info("Starting pollers: %s", ", ".join(names))
    failed = run_domains(names)
    if failed:
        logging.error("Pollers failed: %s", ", ".join(failed))
        return 1
    logging.info("All pollers finished OK")
    return 0


if __name__ == "__main__":
    sys.exit(main())
