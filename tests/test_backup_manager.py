import hashlib
import json
import os
import stat
from unittest.mock import patch

import pytest
import requests
from cryptography.exceptions import InvalidTag

from college_election import db
from college_election.database.models import LogAction, LogStatus, SystemLog
from college_election.operations.backup_manager import (
    collect_snapshot, create_data_backup, decrypt_payload, encrypt_payload, perform_backup,
)

KEY_HEX = "00112233445566778899aabbccddeeff" * 2


@pytest.fixture
def backup_dir(app_ctx, tmp_path, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'BACKUP_OUTDIR', str(tmp_path))
    monkeypatch.setitem(app_ctx.config, 'BACKUP_AES256_KEY', KEY_HEX)
    monkeypatch.setitem(app_ctx.config, 'BACKUP_UPLOAD_URL', '')
    return tmp_path


def test_encrypt_roundtrip_and_tamper():
    key = bytes.fromhex(KEY_HEX)
    blob = encrypt_payload(b"ballots", key)
    assert decrypt_payload(blob, key) == b"ballots"
    assert encrypt_payload(b"ballots", key) != blob  # fresh nonce

    tampered = blob[:-1] + bytes([blob[-1] ^ 1])
    with pytest.raises(InvalidTag):
        decrypt_payload(tampered, key)


def test_snapshot_excludes_credentials(open_election, as_actor, admin):
    snapshot = collect_snapshot(as_actor(admin))
    assert snapshot['metadata']['created_by'] == admin.id
    assert len(snapshot['elections']) == 1
    assert snapshot['elections'][0]['vote_count'] == 0
    assert len(snapshot['candidates']) == 2
    for user in snapshot['users']:
        assert 'password_hash' not in user
        assert 'verification_token' not in user


def test_create_data_backup(backup_dir):
    result = create_data_backup({"hello": "world"}, "snap.json")
    assert result['success'] is True
    assert result['file_name'] == "snap.json.aes"

    enc_path = backup_dir / "snap.json.aes"
    blob = enc_path.read_bytes()
    assert json.loads(decrypt_payload(blob, bytes.fromhex(KEY_HEX))) == {"hello": "world"}

    digest = (backup_dir / "snap.json.aes.sha256").read_text().split()[0]
    assert digest == hashlib.sha256(blob).hexdigest()

    meta = json.loads((backup_dir / "snap.json.aes.json").read_text())
    assert meta['sha256'] == digest
    assert stat.S_IMODE(os.stat(enc_path).st_mode) == 0o440


def test_backup_requires_key(backup_dir, app_ctx, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'BACKUP_AES256_KEY', "too-short")
    result = create_data_backup({}, "snap.json")
    assert result['success'] is False
    assert "BACKUP_AES256_KEY" in result['error']


def test_backup_upload(backup_dir, app_ctx, monkeypatch):
    monkeypatch.setitem(app_ctx.config, 'BACKUP_UPLOAD_URL', "https://storage.college.test/upload")
    with patch("college_election.operations.backup_manager.requests.post") as mock_post:
        mock_post.return_value.content = b'{"id": "f-1"}'
        mock_post.return_value.json.return_value = {"id": "f-1", "link": "https://storage/f-1"}
        result = create_data_backup({"a": 1}, "up.json")
    assert result['file_id'] == "f-1"
    assert result['link'] == "https://storage/f-1"

    with patch("college_election.operations.backup_manager.requests.post") as mock_post:
        mock_post.side_effect = requests.ConnectionError("offline")
        result = create_data_backup({"a": 1}, "down.json")
    assert result['success'] is False


def test_perform_backup_is_audited(backup_dir, admin, as_actor):
    result = perform_backup(as_actor(admin))
    assert result['success'] is True

    entry = db.session.query(SystemLog).filter(SystemLog.action == LogAction.BACKUP_CREATE).one()
    assert entry.status == LogStatus.SUCCESS
    assert entry.details['file_name'] == result['file_name']
    assert (backup_dir / result['file_name']).exists()


def test_backup_route(client, backup_dir, admin, teacher, auth_headers):
    assert client.post("/admin/backup", headers=auth_headers(teacher)).status_code == 403
    rv = client.post("/admin/backup", headers=auth_headers(admin))
    assert rv.status_code == 200
    assert rv.get_json()['success'] is True
