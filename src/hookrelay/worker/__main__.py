from hookrelay.worker.main import run

run()
