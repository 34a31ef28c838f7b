import os
import json
import fcntl
import logging
import time
import random

from offload.exceptions import OffloadError

logger = logging.getLogger(__name__)


class ConflictError(OffloadError):
    status_code = 503


class LocalCASObject:
    """
    A versioned JSON document on local disk that several processes can share.

    Writers use optimistic concurrency: read (data, version), transform, then
    write only if the version is unchanged. A lock file serialises the
    compare-and-swap step itself; data and meta are replaced atomically.
    """
    def __init__(self, filename_base):
        self.data_file = f"{filename_base}.json"
        self.meta_file = f"{filename_base}.meta"
        self.lock_file = f"{filename_base}.lock"

        directory = os.path.dirname(os.path.abspath(self.data_file))
        os.makedirs(directory, exist_ok=True)

        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                if not os.path.exists(self.meta_file):
                    self._write_meta(0)
                if not os.path.exists(self.data_file):
                    self._write_data({})
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _write_meta(self, version):
        tmp_meta = f"{self.meta_file}.{os.getpid()}.tmp"
        with open(tmp_meta, 'w') as f:
            json.dump({"version": version}, f)
        os.replace(tmp_meta, self.meta_file)

    def _write_data(self, data):
        # Serialise first so an unencodable value never leaves a partial file behind
        encoded = json.dumps(data)
        tmp_data = f"{self.data_file}.{os.getpid()}.tmp"
        with open(tmp_data, 'w') as f:
            f.write(encoded)
        os.replace(tmp_data, self.data_file)

    def _read_version(self):
        try:
            with open(self.meta_file, 'r') as f:
                return json.load(f).get("version", 0)
        except (FileNotFoundError, json.JSONDecodeError):
            return 0

    def read(self):
        """
        Read the current data and version.
        Returns:
            (dict, int): The JSON data and the current version.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
            try:
                version = self._read_version()
                try:
                    with open(self.data_file, 'r') as f:
                        data = json.load(f)
                except (FileNotFoundError, json.JSONDecodeError):
                    data = {}
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return data, version

    def cas_write(self, new_data, expected_version):
        """
        Write new_data only if the stored version still equals expected_version.
        Returns:
            (True, new_version) on success.
            (False, current_version) on conflict.
        """
        with open(self.lock_file, 'a') as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                current_version = self._read_version()
                if current_version != expected_version:
                    return False, current_version

                new_version = current_version + 1
                self._write_data(new_data)
                self._write_meta(new_version)
                return True, new_version
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def update_with_retry(self, update_fn, max_retries=10, base_delay=0.01):
        """
        Apply update_fn(data) -> data under CAS, retrying conflicts with
        exponential backoff and jitter. update_fn may run more than once and
        always receives a fresh read.
        """
        for attempt in range(max_retries):
            data, version = self.read()
            new_data = update_fn(data)

            ok, new_version = self.cas_write(new_data, version)
            if ok:
                logger.debug(f"Updated {self.data_file} to version {new_version} on attempt {attempt + 1}")
                return new_data, new_version

            delay = base_delay * (2 ** attempt) + random.uniform(0, 0.05)
            logger.warning(f"Conflict on version {version}. Retrying in {delay:.3f}s (Attempt {attempt + 1}/{max_retries})")
            time.sleep(delay)

        raise ConflictError(f"Failed to update {self.data_file} after {max_retries} attempts.")
