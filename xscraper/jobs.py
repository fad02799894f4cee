"""
Background jobs for the dashboard API. Each job is a child process running the
CLI (`python -m xscraper scrape|profile ...`) so that its interrupt handler and
final flush behave exactly as in a terminal run.
"""

import sys
import json
import time
import logging
import subprocess
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from xscraper.config import JOB_DIR, OUTPUT_DIR
from xscraper.runner import EXIT_CODES, RunOutcome
from xscraper.store import FlushResult, write_json_atomic

logger = logging.getLogger(__name__)

JOB_KINDS = ('scrape', 'profile')
RUNNING = 'running'
OUTPUT_TAIL_LINES = 50
ZERO_ALLOWED = ('scroll_delay',)

# request key -> (cli flag, type)
SCRAPE_PARAMS = {
    'user': ('--user', str),
    'query': ('--query', str),
    'since': ('--since', str),
    'until': ('--until', str),
    'tab': ('--tab', str),
    'limit': ('--limit', int),
    'lang': ('--lang', str),
    'max_no_new': ('--max-no-new', int),
    'scroll_delay': ('--scroll-delay', int),
}
PROFILE_PARAMS = {
    'username': ('--username', str),
    'tab': ('--tab', str),
    'limit': ('--limit', int),
    'min_word_length': ('--min-word-length', int),
    'language': ('--language', str),
    'scroll_delay': ('--scroll-delay', int),
}


def classify_exit(returncode: int, stop_requested: bool = False) -> str:
    """
    Exit codes from the child's own runner win. A negative code means the child
    was killed by a signal before it could report, which only counts as a stop
    when one was asked for.
    """
    for status, code in EXIT_CODES.items():
        if returncode == code:
            return status
    if returncode < 0 and stop_requested:
        return 'stopped'
    return 'failed'


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _read_json(path: Path) -> Optional[Dict]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except ValueError as e:
        logger.warning(f"Ignoring unreadable JSON in {path}: {e}")
        return None


# ===============================================
# ||           JOB STATUS WRITER               ||
# ===============================================
class JobStatusWriter:
    """Used inside the child process to report progress back to the job manager."""
    def __init__(self, path):
        self.path = Path(path)

    def _write(self, data: Dict):
        data['updated_at'] = _now()
        try:
            write_json_atomic(self.path, data)
        except OSError as e:
            logger.warning(f"Could not write job status to {self.path}: {e}")

    def progress(self, run, result: FlushResult):
        self._write({
            'state': RUNNING,
            'collected': len(run.accumulator),
            'persisted': result.total,
            'added': run.added_total,
            'iteration': run.scroll_iteration,
        })

    def finish(self, outcome: RunOutcome):
        data = outcome.to_dict()
        data['state'] = 'finished'
        data['exit_code'] = outcome.exit_code
        self._write(data)


# ===============================================
# ||              JOB MANAGER                  ||
# ===============================================
class JobManager:
    """Starts, tracks and stops collection jobs. Job records live in `job_dir` as JSON."""
    def __init__(self, job_dir: str = JOB_DIR, output_dir: str = OUTPUT_DIR, python: str = sys.executable):
        self.job_dir = Path(job_dir)
        self.job_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.python = python
        self.processes: Dict[str, subprocess.Popen] = {}

    def _get_job_path(self, job_id: str) -> Path:
        return self.job_dir / f"{job_id}.json"

    def _progress_path(self, job_id: str) -> Path:
        return self.job_dir / f"{job_id}.progress.json"

    def _log_path(self, job_id: str) -> Path:
        return self.job_dir / f"{job_id}.log"

    def load_job(self, job_id: str) -> Optional[Dict]:
        if not job_id.isdigit():
            return None
        return _read_json(self._get_job_path(job_id))

    def save_job(self, job_id: str, job_data: Dict):
        write_json_atomic(self._get_job_path(job_id), job_data)

    def _new_job_id(self) -> str:
        job_id = int(time.time() * 1000)
        while self._get_job_path(str(job_id)).exists():
            job_id += 1
        return str(job_id)

    def build_args(self, kind: str, params: Dict, outfile: Path, status_file: Optional[Path] = None) -> List[str]:
        """Translate request parameters into CLI arguments. Raises ValueError on bad input."""
        if kind not in JOB_KINDS:
            raise ValueError(f"Unknown job kind '{kind}'")
        known = SCRAPE_PARAMS if kind == 'scrape' else PROFILE_PARAMS

        if kind == 'scrape' and not (params.get('user') or params.get('query')):
            raise ValueError("Either 'user' or 'query' is required")
        if kind == 'profile' and not params.get('username'):
            raise ValueError("'username' is required")

        args = [self.python, '-m', 'xscraper', kind]
        for key, (flag, kind_type) in known.items():
            value = params.get(key)
            if value is None or value == '':
                continue
            if kind_type is int:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise ValueError(f"Invalid value for '{key}': expected integer, got '{value}'")
                if value < 0 or (value == 0 and key not in ZERO_ALLOWED):
                    raise ValueError(f"Invalid value for '{key}': out of range, got {value}")
            args.extend([flag, str(value)])

        if kind == 'profile' and params.get('include_stopwords'):
            args.append('--include-stopwords')
        args.append('--headless' if params.get('headless', True) is not False else '--no-headless')
        args.extend(['--outfile', str(outfile)])
        if status_file is not None:
            args.extend(['--status-file', str(status_file)])
        return args

    def output_path(self, job_id: str, kind: str = 'scrape') -> Path:
        suffix = 'tweets' if kind == 'scrape' else 'profile'
        return self.output_dir / f"{job_id}_{suffix}.json"

    def start_job(self, kind: str, params: Dict) -> Dict:
        job_id = self._new_job_id()
        outfile = self.output_path(job_id, kind)
        status_file = self._progress_path(job_id)
        args = self.build_args(kind, params, outfile, status_file)

        logger.info(f"Starting {kind} job {job_id}: {' '.join(args[1:])}")
        with open(self._log_path(job_id), 'w', encoding='utf-8') as log:
            process = subprocess.Popen(args, stdout=log, stderr=subprocess.STDOUT, stdin=subprocess.DEVNULL)
        self.processes[job_id] = process

        job = {
            'job_id': job_id,
            'kind': kind,
            'params': params,
            'outfile': str(outfile),
            'pid': process.pid,
            'status': RUNNING,
            'start_time': _now(),
            'end_time': None,
            'stop_requested': False,
        }
        self.save_job(job_id, job)
        return job

    def _refresh(self, job: Dict) -> Dict:
        job_id = job['job_id']
        if job['status'] != RUNNING:
            return job

        process = self.processes.get(job_id)
        if process is not None:
            returncode = process.poll()
        else:
            # Started by another manager instance; fall back to the child's own report.
            progress = _read_json(self._progress_path(job_id)) or {}
            returncode = progress.get('exit_code')
        if returncode is None:
            return job

        job['status'] = classify_exit(returncode, job.get('stop_requested', False))
        job['returncode'] = returncode
        job['end_time'] = _now()
        self.processes.pop(job_id, None)
        self.save_job(job_id, job)
        logger.info(f"Job {job_id} exited with code {returncode} ({job['status']})")
        return job

    def _output_tail(self, job_id: str) -> List[str]:
        try:
            with open(self._log_path(job_id), 'r', encoding='utf-8', errors='replace') as f:
                return [line.rstrip('\n') for line in deque(f, maxlen=OUTPUT_TAIL_LINES)]
        except FileNotFoundError:
            return []

    def status(self, job_id: str) -> Optional[Dict]:
        job = self.load_job(job_id)
        if job is None:
            return None
        job = self._refresh(job)
        result = dict(job)
        result['progress'] = _read_json(self._progress_path(job_id))
        result['output'] = self._output_tail(job_id)
        return result

    def stop(self, job_id: str) -> Optional[Dict]:
        """Asks the child to stop. It flushes what it has and exits on its own."""
        job = self.load_job(job_id)
        if job is None:
            return None
        job = self._refresh(job)
        if job['status'] != RUNNING:
            return job

        process = self.processes.get(job_id)
        job['stop_requested'] = True
        self.save_job(job_id, job)
        if process is not None:
            logger.info(f"Stopping job {job_id} (pid {process.pid})")
            process.terminate()
        else:
            logger.warning(f"Job {job_id} has no process handle in this server; cannot signal it")
        return job

    def list_jobs(self) -> List[Dict]:
        jobs = []
        for path in sorted(self.job_dir.glob('*.json')):
            if not path.stem.isdigit():
                continue
            job = self.load_job(path.stem)
            if job is not None:
                jobs.append(self._refresh(job))
        return jobs
