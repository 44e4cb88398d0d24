# college_election/operations/backup_manager.py
# Encrypted JSON snapshots of the election data with a SHA-256 integrity file

import os, json, hashlib, secrets, pathlib, re
from typing import Dict
import logging

import requests
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import (
    Candidate, Election, LogAction, LogStatus, SchoolClass, User, utcnow,
)

logger = logging.getLogger(__name__)

# Fields that never leave the database
_USER_SECRETS = ('password_hash', 'verification_token', 'reset_password_token')


def _sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _backup_key() -> bytes:
    # 64-hex chars (32 bytes) key. Example: os.urandom(32).hex()
    key_hex = current_app.config.get("BACKUP_AES256_KEY") or ""
    if not re.fullmatch(r"[0-9a-fA-F]{64}", key_hex):
        raise ValueError("BACKUP_AES256_KEY (64 hex chars) is required")
    return bytes.fromhex(key_hex)


def encrypt_payload(plaintext: bytes, key: bytes) -> bytes:
    # AES-256-GCM with a random 12B nonce stored in front of the ciphertext
    nonce = secrets.token_bytes(12)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt_payload(blob: bytes, key: bytes) -> bytes:
    return AESGCM(key).decrypt(blob[:12], blob[12:], None)


def collect_snapshot(actor=None) -> Dict:
    """Gather users (without credentials), classes, elections and candidates."""
    users = []
    for user in db.session.query(User).order_by(User.id):
        record = user.to_dict()
        for field in _USER_SECRETS:
            record.pop(field, None)
        users.append(record)

    return {
        "users": users,
        "classes": [c.to_dict() for c in db.session.query(SchoolClass).order_by(SchoolClass.id)],
        "elections": [
            dict(e.to_dict(),
                 vote_count=e.vote_count,
                 anonymous_vote_count=len(e.anonymous_votes))
            for e in db.session.query(Election).order_by(Election.id)
        ],
        "candidates": [c.to_dict() for c in db.session.query(Candidate).order_by(Candidate.id)],
        "metadata": {
            "created_at": utcnow().isoformat(),
            "created_by": actor.user_id if actor else None,
            "version": "1.0",
        },
    }


def _upload(path: str, name: str) -> Dict:
    url = current_app.config.get("BACKUP_UPLOAD_URL")
    with open(path, "rb") as f:
        response = requests.post(url, files={"file": (name, f, "application/octet-stream")}, timeout=30)
    response.raise_for_status()
    body = response.json() if response.content else {}
    return {"file_id": body.get("id"), "link": body.get("link") or body.get("url")}


def create_data_backup(data: Dict, filename: str) -> Dict:
    """
    Serialises ``data`` to JSON, encrypts it with AES-256-GCM, writes the
    ciphertext plus a .sha256 integrity file and a JSON manifest to
    BACKUP_OUTDIR, and uploads it when BACKUP_UPLOAD_URL is set.
    Returns {success, file_id?, file_name?, link?, error?}.
    """
    try:
        key = _backup_key()
        outdir = current_app.config.get("BACKUP_OUTDIR", "./backups")
        pathlib.Path(outdir).mkdir(parents=True, exist_ok=True)

        plaintext = json.dumps(data, indent=2, default=str).encode()
        enc_name = f"{os.path.basename(filename)}.aes"
        enc_path = os.path.join(outdir, enc_name)
        with open(enc_path, "wb") as f:
            f.write(encrypt_payload(plaintext, key))  # nonce (12B) + ciphertext+tag

        # Integrity file
        sha = _sha256_file(enc_path)
        sha_path = enc_path + ".sha256"
        with open(sha_path, "w") as f:
            f.write(f"{sha}  {enc_name}\n")

        # Minimal immutable behaviour: mark read-only (portable)
        os.chmod(enc_path, 0o440)

        meta = {
            "backup_file": enc_path,
            "sha256_file": sha_path,
            "sha256": sha,
            "bytes_plaintext": len(plaintext),
            "created_at": utcnow().isoformat(),
        }
        with open(enc_path + ".json", "w") as f:
            json.dump(meta, f, indent=2)

        result = {"success": True, "file_name": enc_name, "file_id": None, "link": None}
        if current_app.config.get("BACKUP_UPLOAD_URL"):
            result.update(_upload(enc_path, enc_name))
        logger.info("Backup created: %s", enc_path)
        return result
    except (OSError, ValueError, requests.RequestException) as e:
        logger.error("Backup failed: %s", e)
        return {"success": False, "error": str(e)}


def perform_backup(actor=None) -> Dict:
    """Snapshot the database, write the encrypted backup and record it in the audit log."""
    data = collect_snapshot(actor)
    filename = f"college-election-backup-{utcnow().strftime('%Y%m%d-%H%M%S')}.json"
    result = create_data_backup(data, filename)

    details = {"file_name": result.get("file_name"), "file_id": result.get("file_id")}
    if not result["success"]:
        details = {"error": result.get("error")}
    audit_logger.create_log(LogAction.BACKUP_CREATE, actor.user_id if actor else None, details,
                            status=LogStatus.SUCCESS if result["success"] else LogStatus.FAILURE)
    return result
