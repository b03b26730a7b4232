"""Configuration: profiles for every backend, from_dict() and Extra records.

Demonstrates how stored profile records become clients, and how a client
hands back the remote prefix and Extra JSON to be persisted after a session.
No network access happens here: clients only connect when asked to.
"""

from __future__ import annotations

import json

from backup_remote import (
    ConnectionProfile,
    GoogleDriveExtra,
    Protocol,
    SMBExtra,
    WebDAVExtra,
    create_client,
)

STORED_PROFILES = [
    {
        "name": "Office NAS",
        "protocol": "smb",
        "host": "nas.office.lan",
        "username": "backup",
        "password": "secret",
        "remote": "Laptops/alice",
        "extra": {"share": "backups", "domain": "OFFICE"},
    },
    {
        "name": "Home server",
        "protocol": "sftp",
        "host": "home.example.org",
        "username": "alice",
        "remote": "/srv/backups",
        "extra": {"port": 2222, "host_key_policy": "tofu"},
    },
    {
        "name": "Nextcloud",
        "protocol": "WEBDAV",
        "host": "https://cloud.example.org/remote.php/dav/files/alice",
        "username": "alice",
        "password": "app-password",
        "remote": "Backups",
    },
]

if __name__ == "__main__":
    # --- Stored records to profiles ---
    for record in STORED_PROFILES:
        profile = ConnectionProfile.from_dict(record)
        profile.validate()
        print(f"{profile.name}: protocol={profile.protocol.value} remote={profile.remote!r}")

    # --- Typed Extra records ---
    smb = ConnectionProfile.from_dict(STORED_PROFILES[0])
    print(f"\nSMB extra: {smb.extra_for(SMBExtra)}")
    print(f"WebDAV defaults: {WebDAVExtra()}")

    # --- Validation errors are ValueErrors ---
    try:
        ConnectionProfile(name="broken", protocol=Protocol.SMB, host="nas").validate()
    except ValueError as exc:
        print(f"\nInvalid profile: {exc}")

    # --- Google Drive profiles carry the authorized-user token in ``password`` ---
    token = {"client_id": "id", "client_secret": "secret", "refresh_token": "refresh"}
    drive = ConnectionProfile(
        name="Drive",
        protocol=Protocol.GDRIVE,
        password=json.dumps(token),
        remote="DataBackup/laptop",
        extra=GoogleDriveExtra(account_email="alice@example.org").to_json(),
    )
    client = create_client(drive)
    print(f"\nCreated {client.name} client, connected={client.is_connected}")

    # --- set_remote hands back what should be persisted ---
    sftp = create_client(ConnectionProfile.from_dict(STORED_PROFILES[1]))
    sftp.set_remote(lambda prefix, extra: print(f"\nPersist remote={prefix!r} extra={extra}"))
