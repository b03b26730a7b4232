"""Quickstart: upload a file to an SFTP server and list the remote folder.

Demonstrates:
- Building a ConnectionProfile and creating its client
- Using the client as a context manager
- Uploading with a progress callback

Set ``SFTP_HOST``, ``SFTP_USER`` and ``SFTP_PASSWORD`` before running.
"""

from __future__ import annotations

import os
import tempfile

from backup_remote import ConnectionProfile, Protocol, SFTPExtra, create_client


def _print_progress(done: int, total: int) -> None:
    print(f"  {done}/{total} bytes")


if __name__ == "__main__":
    profile = ConnectionProfile(
        name="nas",
        protocol=Protocol.SFTP,
        host=os.environ.get("SFTP_HOST", "localhost"),
        username=os.environ.get("SFTP_USER", ""),
        password=os.environ.get("SFTP_PASSWORD", ""),
        remote="/backups",
        extra=SFTPExtra(host_key_policy="tofu").to_json(),
    )

    with tempfile.TemporaryDirectory() as tmp:
        local = os.path.join(tmp, "hello.txt")
        with open(local, "wb") as f:
            f.write(b"Hello, world!")

        with create_client(profile) as client:
            client.upload(local, "demo", on_progress=_print_progress)
            print(f"Exists: {client.exists('demo/hello.txt')}")
            print(f"Size: {client.size('demo/hello.txt')} bytes")

            for entry in client.list_files("demo").files:
                print(f"{entry.name}  {entry.size}  {entry.modified_at}")

            client.delete_recursively("demo")

    print("Done!")
