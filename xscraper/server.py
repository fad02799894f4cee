"""
JSON API for starting, watching and stopping collection jobs, and for reading
their results. The dashboard front end is not part of this package.
"""

import json
import socket
import logging

from flask import Flask, jsonify, request, send_file

from xscraper.jobs import JobManager

logger = logging.getLogger(__name__)


def find_free_port(start: int, host: str = '127.0.0.1', attempts: int = 10) -> int:
    """First port in [start, start + attempts) that can be bound on `host`."""
    for port in range(start, start + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                logger.info(f"Port {port} is in use, trying {port + 1}...")
                continue
            return port
    raise OSError(f"No free port found in range {start}-{start + attempts - 1}")


def create_app(job_manager: JobManager) -> Flask:
    app = Flask(__name__)

    @app.after_request
    def add_cors(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        return response

    def start(kind: str):
        params = request.get_json(silent=True) or {}
        if not isinstance(params, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400
        try:
            job = job_manager.start_job(kind, params)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except OSError as e:
            logger.error(f"Failed to start {kind} process: {e}")
            return jsonify({"error": f"Failed to start {kind} process", "details": str(e)}), 500
        return jsonify({"job_id": job['job_id']})

    def load_result(job_id: str, kind: str):
        """(data, None) on success, (None, error response) otherwise."""
        job = job_manager.load_job(job_id)
        if job is None or job.get('kind') != kind:
            return None, (jsonify({"error": "Job not found"}), 404)
        path = job_manager.output_path(job_id, kind)
        if not path.exists():
            return None, (jsonify({"error": "Result file not found"}), 404)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f), None
        except ValueError as e:
            return None, (jsonify({"error": "Failed to parse result file", "details": str(e)}), 500)
        except OSError as e:
            return None, (jsonify({"error": "Failed to read result file", "details": str(e)}), 500)

    # ── API Routes ──

    @app.route("/api/scrape", methods=["POST"])
    def start_scrape():
        return start('scrape')

    @app.route("/api/profile", methods=["POST"])
    def start_profile():
        return start('profile')

    @app.route("/api/status/<job_id>")
    def job_status(job_id):
        status = job_manager.status(job_id)
        if status is None:
            return jsonify({"error": "Job not found"}), 404
        return jsonify(status)

    @app.route("/api/stop/<job_id>", methods=["POST"])
    def stop_job(job_id):
        job = job_manager.stop(job_id)
        if job is None:
            return jsonify({"error": "Job not found"}), 404
        return jsonify({"job_id": job_id, "status": job['status'], "stop_requested": job.get('stop_requested', False)})

    @app.route("/api/jobs")
    def list_jobs():
        jobs = [
            {key: job.get(key) for key in ('job_id', 'kind', 'status', 'start_time', 'end_time', 'params')}
            for job in job_manager.list_jobs()
        ]
        return jsonify({"jobs": jobs})

    @app.route("/api/tweets/<job_id>")
    def job_tweets(job_id):
        data, error = load_result(job_id, 'scrape')
        if error:
            return error
        if not isinstance(data, list):
            return jsonify({"error": "Failed to parse result file", "details": "expected a JSON array"}), 500
        return jsonify({"tweets": data})

    @app.route("/api/profile/<job_id>")
    def job_profile(job_id):
        data, error = load_result(job_id, 'profile')
        if error:
            return error
        return jsonify(data)

    @app.route("/api/download/<job_id>")
    def download(job_id):
        job = job_manager.load_job(job_id)
        if job is None:
            return jsonify({"error": "Job not found"}), 404
        path = job_manager.output_path(job_id, job.get('kind', 'scrape'))
        if not path.exists():
            return jsonify({"error": "Result file not found"}), 404
        return send_file(path.resolve(), mimetype="application/json", as_attachment=True, download_name=path.name)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    return app
