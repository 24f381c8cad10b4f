import hashlib
from pathlib import Path
from .. import config

class Fingerprinter:
    def fingerprint(self, path: Path) -> str:
        """
        Computes the fingerprint recorded in the manifest for an output file.

        Strategy:
        1. If file < SPARSE_HASH_THRESHOLD:
           -> Full Read (SHA-256).

        2. If file >= SPARSE_HASH_THRESHOLD:
           -> Sparse Hash (Header + Middle + Footer + Size).
              Outputs are only ever compared with their own previous
              version, so sampling is enough to notice a replaced file.
        """
        file_size = path.stat().st_size

        if file_size < config.SPARSE_HASH_THRESHOLD:
            return self._full_sha256(path)
        return self._sparse_hash(path, file_size)

    def _full_sha256(self, path: Path) -> str:
        h = hashlib.sha256()
        with open(path, 'rb') as f:
            while chunk := f.read(config.HASH_CHUNK_SIZE):
                h.update(chunk)
        return h.hexdigest()

    def _sparse_hash(self, path: Path, file_size: int) -> str:
        """
        Reads Header, Middle and Footer samples and mixes in file size.
        Prefixes with 's-' to distinguish from full hashes.
        """
        chunk_size = config.SPARSE_SAMPLE_SIZE
        h = hashlib.sha256()
        h.update(str(file_size).encode('ascii'))

        with open(path, 'rb') as f:
            # 1. Start (Header)
            h.update(f.read(chunk_size))

            # 2. Middle
            f.seek(file_size // 2)
            h.update(f.read(chunk_size))

            # 3. End (Footer)
            f.seek(-chunk_size, 2)
            h.update(f.read(chunk_size))

        return f"s-{h.hexdigest()}"
