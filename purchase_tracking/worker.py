# worker.py
# Varredura periódica de registros vencidos em purchase_event_dedup.
import os, asyncio, json, signal, logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from purchase_tracking.db import DedupStore, make_engine, init_db

# =============================
# Logger
# =============================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] [worker] %(message)s"
)
logger = logging.getLogger("worker")

# =============================
# Configurações
# =============================
PURGE_INTERVAL_SEC = float(os.getenv("DEDUP_PURGE_INTERVAL_SEC", "300"))

class PurgeWorker:
    def __init__(self, store: DedupStore, interval: float = PURGE_INTERVAL_SEC):
        self.store = store
        self.interval = interval
        self._stop = asyncio.Event()

    def stop(self, *_):
        logger.info(json.dumps({"event": "WORKER_STOP"}))
        self._stop.set()

    async def run_once(self) -> int:
        try:
            return await self.store.apurge_expired()
        except SQLAlchemyError as e:
            logger.error(json.dumps({"event": "PURGE_ERROR", "error": str(e)}))
            return 0

    async def run(self, max_runs: Optional[int] = None) -> int:
        """Loop até stop(); retorna total removido."""
        total, runs = 0, 0
        while not self._stop.is_set():
            total += await self.run_once()
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        return total

# =========================
# Main
# =========================
async def main():
    engine = make_engine()
    init_db(engine)
    worker = PurgeWorker(DedupStore(engine))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    logger.info(json.dumps({"event": "WORKER_START", "interval_sec": worker.interval}))
    total = await worker.run()
    logger.info(json.dumps({"event": "WORKER_DONE", "purged_total": total}))

if __name__ == "__main__":
    asyncio.run(main())
