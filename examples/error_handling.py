"""Error handling: catching the normalized client errors.

Every backend maps its native failures onto the same hierarchy, so callers
handle a WebDAV 404 and a missing SFTP file identically.

Set ``DAV_URL``, ``DAV_USER`` and ``DAV_PASSWORD`` before running.
"""

from __future__ import annotations

import os
import tempfile

from backup_remote import (
    AuthenticationError,
    ConnectionProfile,
    InvalidPath,
    NotConnectedError,
    NotFoundError,
    Protocol,
    RemoteClientError,
    RemoteUnavailableError,
    SourceNotFoundError,
    create_client,
)

if __name__ == "__main__":
    profile = ConnectionProfile(
        name="dav",
        protocol=Protocol.WEBDAV,
        host=os.environ.get("DAV_URL", "http://localhost:8080/dav"),
        username=os.environ.get("DAV_USER", ""),
        password=os.environ.get("DAV_PASSWORD", ""),
        remote="errors-demo",
    )
    client = create_client(profile)

    # --- NotConnectedError ---
    try:
        client.list_files("")
    except NotConnectedError as exc:
        print(f"NotConnectedError: {exc}")

    # --- Connection failures ---
    try:
        client.connect()
    except AuthenticationError as exc:
        raise SystemExit(f"Credentials rejected: {exc}") from exc
    except RemoteUnavailableError as exc:
        raise SystemExit(f"Server unreachable: {exc}") from exc

    with tempfile.TemporaryDirectory() as tmp:
        with client:
            # --- NotFoundError ---
            try:
                client.download("missing.bin", tmp)
            except NotFoundError as exc:
                print(f"\nNotFoundError: {exc}")
                print(f"  path={exc.path}, backend={exc.backend}")

            # --- SourceNotFoundError ---
            try:
                client.upload(os.path.join(tmp, "nope.txt"), "")
            except SourceNotFoundError as exc:
                print(f"\nSourceNotFoundError: {exc}")

            # --- InvalidPath ---
            for path in ["../escape", ""]:
                try:
                    client.delete_recursively(path)
                except InvalidPath as exc:
                    print(f"\nInvalidPath: {exc}")

            # --- Catch any client error with the base class ---
            try:
                client.rename_to("missing.txt", "other.txt")
            except RemoteClientError as exc:
                print(f"\nRemoteClientError ({type(exc).__name__}): {exc}")

    print("\nDone!")
