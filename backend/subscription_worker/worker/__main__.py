from subscription_worker.worker.worker_main import run

run()
