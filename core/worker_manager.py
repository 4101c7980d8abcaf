import asyncio
import importlib
import logging
import multiprocessing
import os
from typing import Any, Callable, Dict, List, Optional


def load_handler(handler_path: str) -> Callable:
    """
    Import a handler given as ``"package.module:callable"``.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    module_name, sep, attribute = handler_path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Handler must look like 'module:callable', got '{handler_path}'")

    module = importlib.import_module(module_name)
    handler = getattr(module, attribute, None)
    if not callable(handler):
        raise ValueError(f"'{handler_path}' is not callable")
    return handler


async def run_worker(handler_path: str, worker_id: Optional[str], env_file: str,
                     transport: Optional[str], worker_options: Dict[str, Any],
                     install_signal_handlers: bool = True) -> None:
    """Bootstrap an application in this process and run one message worker until it stops."""
    from bootstrap.app import Application
    from core.messenger.worker import MessageWorker

    app = Application(env_file=env_file, worker_id=worker_id, show_banner=False)
    await app.initialize()

    try:
        worker = MessageWorker(
            transport=app.transports.get_transport(transport),
            handler=load_handler(handler_path),
            install_signal_handlers=install_signal_handlers,
            **worker_options,
        )
        await worker.work()
    finally:
        await app.cleanup()


def worker_process_main(index: int, handler_path: str, worker_id: str, env_file: str,
                        transport: Optional[str], worker_options: Dict[str, Any]):
    """Main function for worker process."""
    logging.basicConfig(
        level=logging.INFO,
        format=f'%(asctime)s - Worker-{index} - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(run_worker(handler_path, worker_id, env_file, transport, worker_options))


class WorkerManager:
    """Runs several message workers as separate processes against the same tables."""

    def __init__(self, handler_path: str, base_worker_id: Optional[str] = None,
                 env_file: str = ".env", transport: Optional[str] = None):
        self.handler_path = handler_path
        self.base_worker_id = base_worker_id or os.getenv("MESSENGER_WORKER_ID") or f"worker-{os.getpid()}"
        self.env_file = env_file
        self.transport = transport
        self.workers: List[multiprocessing.Process] = []
        self.logger = logging.getLogger("DbMessenger.WorkerManager")

    def worker_id_for(self, index: int) -> str:
        return f"{self.base_worker_id}-{index}"

    def start_workers(self, num_workers: int, **worker_options):
        """Start worker processes; each gets its own worker id."""
        if num_workers <= 0:
            return

        # Fail in the parent rather than in every child
        load_handler(self.handler_path)

        self.logger.info(f"Starting {num_workers} message workers")

        for index in range(num_workers):
            process = multiprocessing.Process(
                target=worker_process_main,
                args=(index, self.handler_path, self.worker_id_for(index), self.env_file,
                      self.transport, worker_options),
                name=self.worker_id_for(index),
            )
            process.start()
            self.workers.append(process)
            self.logger.info(f"Started worker {self.worker_id_for(index)} (PID: {process.pid})")

    def join(self):
        """Wait for all worker processes to exit."""
        for worker in self.workers:
            worker.join()

    def stop_workers(self, timeout: float = 5):
        """Stop all worker processes."""
        self.logger.info("Stopping all workers...")

        for worker in self.workers:
            if worker.is_alive():
                self.logger.info(f"Terminating worker {worker.name} (PID: {worker.pid})")
                worker.terminate()
                worker.join(timeout=timeout)

                if worker.is_alive():
                    self.logger.warning(f"Force killing worker {worker.name}")
                    worker.kill()
                    worker.join()

        self.workers.clear()
        self.logger.info("All workers stopped")

    def get_worker_count(self) -> int:
        """Get the number of active workers."""
        return len([w for w in self.workers if w.is_alive()])
