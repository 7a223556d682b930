from __future__ import annotations

import getpass
import os
import shutil
import subprocess
import tarfile
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from kaliclean.audit.logger import AuditLogger, ensure_private_dir
from kaliclean.core.errors import BackupUnavailable, EncryptionFailed, EncryptionUnavailable

from .targets import CommandDump


PassphraseSource = Callable[[], str]
Runner = Callable[..., Any]

# Files of the run itself that never go into (or get deleted by) an archive.
_KEEP_SUFFIXES = (".gpg", ".log", ".trace.jsonl")


@dataclass(frozen=True)
class BackupArtifact:
    source_path: str
    created_at: datetime
    storage_path: Path
    encrypted: bool = False
    passphrase_protected: bool = False


def _expand(p: Union[str, Path]) -> Path:
    return Path(os.path.expandvars(os.path.expanduser(str(p))))


def _with_suffix_increment(dst: Path, *, max_tries: int = 10_000) -> Path:
    """
    Return a non-existing path by appending (n) to the name:
      hosts_2024-01-01_10-00-00 -> hosts_2024-01-01_10-00-00(1)
    """
    if not os.path.lexists(dst):
        return dst
    for i in range(1, max_tries + 1):
        cand = dst.parent / f"{dst.name}({i})"
        if not os.path.lexists(cand):
            return cand
    raise FileExistsError(f"backup: suffix_increment exhausted for {dst}")


def _copy_preserving(src: str, dst: str) -> str:
    shutil.copy2(src, dst, follow_symlinks=False)
    st = os.lstat(src)
    try:
        os.chown(dst, st.st_uid, st.st_gid, follow_symlinks=False)
    except OSError:
        # Only root may give files away; mode and timestamps are already kept.
        pass
    return dst


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif os.path.lexists(path):
        path.unlink()


def restrict_tree(path: Path) -> None:
    """Directories 0700, files 0600. Symlinks are left alone (chmod would follow them)."""
    if path.is_symlink():
        return
    if path.is_dir():
        os.chmod(path, 0o700)
        for root, dirs, files in os.walk(path):
            for name in dirs:
                p = Path(root) / name
                if not p.is_symlink():
                    os.chmod(p, 0o700)
            for name in files:
                p = Path(root) / name
                if not p.is_symlink():
                    os.chmod(p, 0o600)
    else:
        os.chmod(path, 0o600)


def prompt_passphrase(*, attempts: int = 3) -> str:
    """
    Ask for a new archive passphrase on the terminal, twice.
    The passphrase is never echoed, logged or put on a command line.
    """
    for _ in range(attempts):
        try:
            first = getpass.getpass("Backup encryption passphrase: ")
            second = getpass.getpass("Repeat passphrase: ")
        except (EOFError, KeyboardInterrupt) as e:
            raise EncryptionFailed(code="backup.passphrase_missing", message="No passphrase entered") from e
        if not first:
            print("Passphrase must not be empty.")
            continue
        if first != second:
            print("Passphrases do not match.")
            continue
        return first
    raise EncryptionFailed(code="backup.passphrase_missing", message="No matching passphrase entered")


class CachedPassphrase:
    """Prompt once per run, reuse for every later encryption in the same run."""

    def __init__(self, source: PassphraseSource = prompt_passphrase):
        self._source = source
        self._value: Optional[str] = None

    def __call__(self) -> str:
        if self._value is None:
            self._value = self._source()
        return self._value


class BackupManager:
    """
    Owns the backup directory.

    Hard rules:
    - directory 0700, files 0600, enforced on every write.
    - a missing optional source is not an error (nothing to protect).
    - on encryption failure plaintext backups are kept, never discarded.
    """

    def __init__(
        self,
        backup_dir: Path,
        timestamp: str,
        audit: AuditLogger,
        *,
        runner: Runner = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
        gpg_binary: str = "gpg",
    ):
        self._dir = backup_dir
        self._ts = timestamp
        self._audit = audit
        self._run = runner
        self._which = which
        self._gpg = gpg_binary
        self._artifacts: List[BackupArtifact] = []

    @property
    def backup_dir(self) -> Path:
        return self._dir

    @property
    def artifacts(self) -> List[BackupArtifact]:
        return list(self._artifacts)

    def prepare(self) -> None:
        ensure_private_dir(self._dir)

    def _record(self, artifact: BackupArtifact) -> BackupArtifact:
        self._artifacts.append(artifact)
        return artifact

    def archive_path(self, label: str) -> Path:
        return self._dir / f"{label}-{self._ts}.tar.gz.gpg"

    def storage_path_for(self, target: Union[str, CommandDump]) -> Path:
        if isinstance(target, CommandDump):
            return self._dir / f"{target.name}_{self._ts}{target.suffix}"
        return self._dir / f"{_expand(target).name}_{self._ts}"

    def describe(self, target: Union[str, CommandDump]) -> str:
        dest = self.storage_path_for(target)
        if isinstance(target, CommandDump):
            return f"would dump `{' '.join(target.commands()[0])}` -> {dest}"
        return f"would back up {_expand(target)} -> {dest}"

    def backup(self, target: Union[str, CommandDump]) -> Optional[BackupArtifact]:
        if isinstance(target, CommandDump):
            return self.dump_command(target)
        return self.backup_path(target)

    def backup_path(self, src: Union[str, Path]) -> Optional[BackupArtifact]:
        path = _expand(src)
        if not os.path.lexists(path):
            self._audit.record(f"Backup skipped, not found: {path}")
            return None

        self.prepare()
        dest = _with_suffix_increment(self.storage_path_for(str(path)))
        self._audit.record(f"Backing up {path} -> {dest}")
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.copytree(path, dest, symlinks=True, copy_function=_copy_preserving)
            else:
                _copy_preserving(str(path), str(dest))
        except (OSError, shutil.Error) as e:
            self._audit.record(f"Preserving copy failed for {path} ({e}); retrying best-effort copy")
            _remove(dest)
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.copytree(path, dest, symlinks=True, copy_function=shutil.copyfile)
                else:
                    shutil.copyfile(path, dest)
            except (OSError, shutil.Error) as e2:
                _remove(dest)
                raise BackupUnavailable(
                    code="backup.copy_failed",
                    message=f"Cannot back up {path}: {e2}",
                    data={"source": str(path)},
                ) from e2

        restrict_tree(dest)
        if not os.path.lexists(dest):
            raise BackupUnavailable(code="backup.verify_failed", message=f"Backup copy missing after write: {dest}")
        return self._record(BackupArtifact(source_path=str(path), created_at=datetime.now(), storage_path=dest))

    def dump_command(self, target: CommandDump) -> BackupArtifact:
        if target.requires_binary and self._which(target.requires_binary) is None:
            raise BackupUnavailable(
                code="backup.tool_missing",
                message=f"{target.requires_binary} not found; install it to enable the {target.name} backup",
                data={"binary": target.requires_binary},
            )

        self.prepare()
        dest = _with_suffix_increment(self.storage_path_for(target))
        self._audit.record(f"Dumping {target.name} to {dest} (this may take time)")

        commands = target.commands()
        for argv in commands:
            fd = os.open(str(dest), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                with os.fdopen(fd, "wb") as out:
                    # stderr may contain credentials or hostnames: never logged.
                    proc = self._run(argv, stdout=out, stderr=subprocess.DEVNULL, check=False)
                ok = proc.returncode == 0
            except FileNotFoundError:
                ok = False
            if ok and dest.exists() and dest.stat().st_size > 0:
                os.chmod(dest, 0o600)
                self._audit.record(f"{target.name} dump saved to {dest}")
                return self._record(
                    BackupArtifact(source_path=" ".join(commands[0]), created_at=datetime.now(), storage_path=dest)
                )

        _remove(dest)
        raise BackupUnavailable(
            code="backup.dump_failed",
            message=f"Dump of {target.name} failed",
            data={"argv": commands[0]},
        )

    def _gpg_encrypt(self, plain: Path, out: Path, passphrase_source: PassphraseSource) -> None:
        gpg = self._which(self._gpg)
        if gpg is None:
            raise EncryptionUnavailable(
                code="backup.gpg_missing",
                message="gpg not found. Install gnupg to enable encrypted backups.",
            )
        passphrase = passphrase_source()
        argv = [
            gpg,
            "--batch",
            "--pinentry-mode",
            "loopback",
            "--passphrase-fd",
            "0",
            "--symmetric",
            "--cipher-algo",
            "AES256",
            "-o",
            str(out),
            str(plain),
        ]
        self.prepare()
        try:
            proc = self._run(
                argv,
                input=(passphrase + "\n").encode("utf-8"),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
            )
        except FileNotFoundError as e:
            raise EncryptionUnavailable(code="backup.gpg_missing", message=f"gpg could not be started: {e}") from e

        if proc.returncode != 0 or not out.exists() or out.stat().st_size == 0:
            _remove(out)
            raise EncryptionFailed(
                code="backup.encryption_failed",
                message=f"gpg exited with status {proc.returncode}",
                data={"plain": str(plain)},
            )
        os.chmod(out, 0o600)

    def encrypt_artifact(self, artifact: BackupArtifact, passphrase_source: PassphraseSource) -> BackupArtifact:
        """
        Encrypt one artifact; the plain copy is removed only after gpg succeeded.
        Directories are packed into a tar.gz first.
        """
        plain = artifact.storage_path
        packed: Optional[Path] = None
        if plain.is_dir():
            packed = _with_suffix_increment(plain.parent / f"{plain.name}.tar.gz")
            try:
                self._pack(packed, [plain])
            except OSError as e:
                _remove(packed)
                raise BackupUnavailable(code="backup.archive_failed", message=f"Cannot pack {plain}: {e}") from e
            to_encrypt = packed
        else:
            to_encrypt = plain
        out = _with_suffix_increment(to_encrypt.parent / f"{to_encrypt.name}.gpg")
        try:
            self._gpg_encrypt(to_encrypt, out, passphrase_source)
        except (EncryptionUnavailable, EncryptionFailed) as e:
            if packed is not None:
                _remove(packed)
            self._audit.record(f"Encryption of {plain.name} failed ({e.message}); keeping plain backup at {plain}")
            raise
        if packed is not None:
            _remove(packed)
        _remove(plain)
        self._audit.record(f"Encrypted backup created: {out}")
        encrypted = replace(artifact, storage_path=out, encrypted=True, passphrase_protected=True)
        self._artifacts = [a for a in self._artifacts if a is not artifact]
        return self._record(encrypted)

    def _plain_members(self, exclude: Path) -> List[Path]:
        if not self._dir.exists():
            return []
        out: List[Path] = []
        for p in sorted(self._dir.iterdir(), key=lambda x: x.name):
            if p == exclude or p.name.endswith(_KEEP_SUFFIXES):
                continue
            out.append(p)
        return out

    def _pack(self, archive: Path, members: List[Path]) -> None:
        self.prepare()
        fd = os.open(str(archive), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as raw:
            with tarfile.open(fileobj=raw, mode="w:gz") as tar:
                for m in members:
                    tar.add(str(m), arcname=m.name)

    def archive_and_encrypt(
        self,
        label: str,
        passphrase_source: PassphraseSource,
        confirm: Callable[[str], bool],
    ) -> Optional[BackupArtifact]:
        tarball = self._dir / f"{label}-{self._ts}.tar.gz"
        members = self._plain_members(exclude=tarball)
        if not members:
            self._audit.record(f"No plain backups in {self._dir}; nothing to archive")
            return None

        out = self.archive_path(label)
        self._audit.record(f"Archiving and encrypting backups to {out}")
        try:
            self._pack(tarball, members)
            self._gpg_encrypt(tarball, out, passphrase_source)
        except (EncryptionUnavailable, EncryptionFailed) as e:
            self._audit.record(f"{e.message}; keeping plain backups")
            raise
        except OSError as e:
            raise BackupUnavailable(code="backup.archive_failed", message=f"Cannot build archive {tarball}: {e}") from e
        finally:
            # The tarball only duplicates members that are still on disk.
            _remove(tarball)

        self._audit.record(f"Encrypted backup created: {out}")
        artifact = self._record(
            BackupArtifact(
                source_path=str(self._dir),
                created_at=datetime.now(),
                storage_path=out,
                encrypted=True,
                passphrase_protected=True,
            )
        )
        if confirm("Remove plain backup files and keep only encrypted archive?"):
            for m in members:
                _remove(m)
            self._audit.record("Removed plain backup files; encrypted archive kept")
        else:
            self._audit.record("Keeping plain backup files alongside encrypted archive")
        return artifact

    def enforce_permissions(self) -> None:
        if self._dir.exists():
            restrict_tree(self._dir)
