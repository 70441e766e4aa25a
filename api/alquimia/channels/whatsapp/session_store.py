"""WhatsApp credential persistence (local credential tree + remote Supabase table)."""

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from supabase import Client, create_client

from alquimia.channels.whatsapp.events import phone_from_jid
from alquimia.channels.whatsapp.metrics import whatsapp_session_persist_total
from alquimia.channels.whatsapp.state import utcnow
from alquimia.core.config import Settings
from alquimia.utils.logging import mask_identifier

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"


class RemoteSessionTable(Protocol):
    """Durable remote storage for serialized credential bundles."""

    def upsert(self, row: Dict[str, Any]) -> None: ...

    def fetch_latest(self, identifier: Optional[str] = None) -> Optional[Dict[str, Any]]: ...

    def delete(self, identifier: str) -> None: ...


class SupabaseSessionTable:
    """``whatsapp_sessions`` table accessed through the Supabase client.

    Row layout: ``phone_number`` (unique), ``session_data`` (JSON bundle),
    ``last_connected`` (timestamptz), ``is_active`` (bool).
    """

    def __init__(self, client: Client, table: str = "whatsapp_sessions"):
        self.client = client
        self.table = table

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseSessionTable":
        client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
        return cls(client, table=settings.WHATSAPP_SESSIONS_TABLE)

    def upsert(self, row: Dict[str, Any]) -> None:
        self.client.table(self.table).upsert(row, on_conflict="phone_number").execute()

    def fetch_latest(self, identifier: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = self.client.table(self.table).select("*").eq("is_active", True)
        if identifier:
            query = query.eq("phone_number", identifier)
        result = query.order("last_connected", desc=True).limit(1).execute()
        rows = result.data or []
        return rows[0] if rows else None

    def delete(self, identifier: str) -> None:
        self.client.table(self.table).delete().eq("phone_number", identifier).execute()


class SessionStore:
    """Persists and restores the WhatsApp credential bundle.

    The bundle is the credential file tree written by the protocol library
    (``creds.json`` plus key files). Every public operation is idempotent and
    degrades to "no session" on failure instead of raising.

    Attributes:
        auth_dir: Local credential directory
        remote: Optional remote table for cross-host session restore
    """

    def __init__(self, auth_dir: str | Path, remote: Optional[RemoteSessionTable] = None):
        self.auth_dir = Path(auth_dir)
        self.remote = remote

    @property
    def creds_file(self) -> Path:
        return self.auth_dir / CREDS_FILE

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None

    def has_stored_session(self) -> bool:
        """Check for a local credential file. No side effects."""
        return self.creds_file.exists()

    def validate_session(self) -> bool:
        """Load and sanity-check the stored credentials.

        Returns:
            True if the credentials reference a paired identity, False on
            missing or corrupt data
        """
        if not self.has_stored_session():
            logger.debug(f"Credential file not found: {self.creds_file}")
            return False

        try:
            with open(self.creds_file, "r") as f:
                creds = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.exception(f"Failed to read credentials from {self.creds_file}")
            return False

        if not isinstance(creds, dict):
            logger.warning("Credential file is not a JSON object")
            return False

        me = creds.get("me")
        if not isinstance(me, dict) or not me.get("id"):
            logger.warning("Credential file has no paired identity (me.id)")
            return False

        return True

    def stored_identifier(self) -> Optional[str]:
        """Phone identifier of the paired account in the local credentials, if any."""
        if not self.has_stored_session():
            return None
        try:
            with open(self.creds_file, "r") as f:
                creds = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning(f"Cannot read paired identity from {self.creds_file}")
            return None

        me = creds.get("me") if isinstance(creds, dict) else None
        jid = me.get("id") if isinstance(me, dict) else None
        if not isinstance(jid, str) or not jid:
            return None
        return phone_from_jid(jid)

    def read_credentials(self) -> Dict[str, Any]:
        """Read the local credential tree as ``{filename: json}``.

        Unreadable files are skipped with a warning so a single corrupt key
        file does not discard the whole session.
        """
        files: Dict[str, Any] = {}
        if not self.auth_dir.is_dir():
            return files

        for path in sorted(self.auth_dir.glob("*.json")):
            try:
                with open(path, "r") as f:
                    files[path.name] = json.load(f)
            except (OSError, json.JSONDecodeError):
                logger.warning(f"Skipping unreadable credential file {path.name}")
        return files

    def write_credentials(self, files: Mapping[str, Any]) -> None:
        """Atomically write credential files into the credential directory.

        Uses the temp file + rename pattern per file so a crash mid-write
        never leaves a truncated credential file behind.

        Raises:
            ValueError: If a filename would escape the credential directory
            OSError: If a write fails
        """
        self.auth_dir.mkdir(parents=True, exist_ok=True)

        for name, content in files.items():
            if not name or Path(name).name != name or not name.endswith(".json"):
                raise ValueError(f"Invalid credential filename: {name!r}")

            target = self.auth_dir / name
            temp_file = target.with_suffix(".tmp")
            try:
                with open(temp_file, "w") as f:
                    json.dump(content, f)
                os.chmod(temp_file, 0o600)
                temp_file.replace(target)
            except Exception:
                logger.exception(f"Failed to write credential file {name}")
                if temp_file.exists():
                    temp_file.unlink()
                raise

    def clear_local(self) -> bool:
        """Delete the local credential tree and recreate an empty directory."""
        try:
            if self.auth_dir.exists():
                shutil.rmtree(self.auth_dir)
            self.auth_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"WhatsApp credentials removed from {self.auth_dir}")
            return True
        except OSError:
            logger.exception(f"Failed to clear credentials in {self.auth_dir}")
            return False

    async def save_session_to_remote(self, identifier: str) -> bool:
        """Upsert the current local credentials into the remote table.

        Returns:
            True on success, False when remote storage is disabled, there is
            nothing to save, or the write fails
        """
        if self.remote is None:
            return False
        if not identifier:
            logger.warning("Cannot save WhatsApp session remotely without an identifier")
            return False

        try:
            files = await asyncio.to_thread(self.read_credentials)
            if CREDS_FILE not in files:
                logger.warning("No local credentials to save remotely")
                return False

            row = {
                "phone_number": identifier,
                "session_data": files,
                "last_connected": utcnow().isoformat(),
                "is_active": True,
            }
            await asyncio.to_thread(self.remote.upsert, row)
            whatsapp_session_persist_total.labels(target="remote", result="success").inc()
            logger.info(f"WhatsApp session saved remotely for {mask_identifier(identifier)}")
            return True
        except Exception as e:
            whatsapp_session_persist_total.labels(target="remote", result="failure").inc()
            logger.error(f"Failed to save WhatsApp session remotely: {e}")
            return False

    async def load_session_from_remote(self, identifier: Optional[str] = None) -> Optional[str]:
        """Restore the most recently active remote session into the local tree.

        Args:
            identifier: Restrict the lookup to one phone identifier

        Returns:
            The restored phone identifier, or None when nothing was restored
        """
        if self.remote is None:
            return None

        try:
            row = await asyncio.to_thread(self.remote.fetch_latest, identifier)
            if not row:
                logger.info("No active WhatsApp session found in remote storage")
                return None

            files = row.get("session_data")
            if isinstance(files, str):
                files = json.loads(files)
            if not isinstance(files, dict) or CREDS_FILE not in files:
                logger.warning("Remote WhatsApp session has no credential file")
                return None

            await asyncio.to_thread(self.write_credentials, files)
            restored = row.get("phone_number")
            logger.info(f"WhatsApp session restored from remote for {mask_identifier(restored)}")
            return restored
        except Exception as e:
            logger.error(f"Failed to load WhatsApp session from remote: {e}")
            return None

    async def delete_remote_session(self, identifier: Optional[str]) -> bool:
        if self.remote is None or not identifier:
            return False
        try:
            await asyncio.to_thread(self.remote.delete, identifier)
            logger.info(f"Remote WhatsApp session deleted for {mask_identifier(identifier)}")
            return True
        except Exception as e:
            logger.error(f"Failed to delete remote WhatsApp session: {e}")
            return False
