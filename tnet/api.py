from __future__ import annotations

from typing import Any

from flask import Flask, jsonify

from tnet.scheduler import ReconcileScheduler


def create_app(scheduler: ReconcileScheduler) -> Flask:
	app = Flask(__name__)
	# Read-only view of the controller process; resources are the control surface.
	app.config['scheduler'] = scheduler

	@app.get("/healthz")
	def healthz() -> Any:
		return jsonify({"status": "ok"})

	@app.get("/readyz")
	def readyz() -> Any:
		sched = app.config['scheduler']
		if not sched.ready:
			return jsonify({"status": "starting"}), 503
		return jsonify({"status": "ready"})

	@app.get("/status")
	def status() -> Any:
		sched = app.config['scheduler']
		return jsonify(sched.snapshot())

	return app
