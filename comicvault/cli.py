from __future__ import annotations

import os
import sys
import argparse
import json as _json
import getpass as _getpass
import logging
import shutil

from typing import List, Optional

from comicvault.config import Settings, default_settings_path, load_settings, update_settings
from comicvault.errors import ComicVaultError
from comicvault.keywrap import DeviceKeyWrapper
from comicvault.session import ComicSession, extract_cover
from comicvault.vault import Vault, VaultItem

logger = logging.getLogger("comicvault")


def _read_password(given: Optional[str], prompt: str, *, confirm: bool = False) -> str:
    """Return ``given`` or prompt for a password on the terminal.

    Args:
        given: Password passed on the command line, if any.
        prompt: Prompt shown by getpass.
        confirm: Ask twice and require both entries to match.
    """
    if given is not None:
        return given
    pw = _getpass.getpass(prompt)
    if confirm and _getpass.getpass("Repeat password: ") != pw:
        raise ValueError("Passwords do not match")
    return pw


def _parse_pages(spec: Optional[str], count: int) -> List[int]:
    """Turn a 1-based selection like ``1,3-5`` into 0-based indices."""
    if not spec:
        return list(range(count))
    picked: List[int] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            picked.extend(range(int(lo) - 1, int(hi)))
        else:
            picked.append(int(part) - 1)
    return picked


def _open_vault(settings: Settings, vault_dir: Optional[str]) -> Vault:
    root = vault_dir or settings.vault_dir
    # Biometric unlock needs an interactive authenticator; the CLI always uses passwords
    wrapper = DeviceKeyWrapper(os.path.join(os.path.dirname(os.path.abspath(root)), "device.key"), authenticate=None)
    return Vault(root, key_wrapper=wrapper, scratch_lifetime=settings.scratch_lifetime, temp_dir=settings.temp_dir)


def _find_item(vault: Vault, name: str) -> VaultItem:
    for item in vault.list_files():
        if item.original_name == name or item.id == name:
            return item
    raise FileNotFoundError(f"No vault item named {name!r}")


# -------- Reading --------

def cmd_pages(archive: str, settings: Settings, *, as_json: bool = False) -> None:
    """Print the page list of a comic.

    Args:
        archive: Comic archive, PDF, image or folder.
        settings: Loaded settings (limits and temp dir).
        as_json: Emit a JSON array instead of a table.
    """
    with ComicSession(archive, limits=settings.archive_limits(), temp_dir=settings.temp_dir) as session:
        entries = session.entries
        if as_json:
            print(_json.dumps(
                [{"index": e.index, "path": e.path, "size": e.uncompressed_size} for e in entries],
                indent=2,
            ))
            return
        for e in entries:
            print(f"{e.index + 1:5d}  {e.uncompressed_size:>10d}  {e.path}")
        print(f"{len(entries)} page(s)")


def cmd_cover(archive: str, output: str, settings: Settings) -> None:
    data = extract_cover(archive, limits=settings.archive_limits(), temp_dir=settings.temp_dir)
    with open(output, "wb") as f:
        f.write(data)
    print(f"Wrote cover ({len(data)} bytes) to {output}")


def cmd_extract(archive: str, outdir: str, settings: Settings, *, pages: Optional[str] = None, quiet: bool = False) -> None:
    """Write selected pages of a comic to ``outdir``.

    Pages are named ``NNNN-<name>`` so members from different folders of
    the archive never collide.
    """
    os.makedirs(outdir, exist_ok=True)
    with ComicSession(
        archive,
        limits=settings.archive_limits(),
        prefetch_count=settings.prefetch_count,
        temp_dir=settings.temp_dir,
    ) as session:
        selected = _parse_pages(pages, session.page_count)
        for index in selected:
            data = session.page_bytes(index)
            entry = session.entries[index]
            session.prefetch_around(index)
            out = os.path.join(outdir, f"{index + 1:04d}-{entry.file_name}")
            with open(out, "wb") as f:
                f.write(data)
            if not quiet:
                print(out)
        print(f"Done: extracted {len(selected)} page(s) to {outdir}")


# -------- Vault --------

def cmd_vault(args: argparse.Namespace, settings: Settings) -> None:
    vault = _open_vault(settings, args.vault)
    action = args.vault_cmd
    if action == "setup":
        pw = _read_password(args.password, "New vault password: ", confirm=True)
        vault.setup_vault(pw)
        print(f"Vault created at {vault.root}")
        return
    if action == "passwd":
        current = _read_password(args.password, "Current vault password: ")
        new = _read_password(args.new_password, "New vault password: ", confirm=True)
        vault.change_password(current, new)
        print("Password changed")
        return
    if action == "destroy":
        if not args.yes:
            raise ValueError("Refusing to destroy the vault without --yes")
        vault.delete_vault(_read_password(args.password, "Vault password: "))
        print("Vault deleted")
        return

    vault.unlock(_read_password(args.password, "Vault password: "))
    try:
        if action == "list":
            items = vault.list_files()
            for item in items:
                print(f"{item.id}  {item.file_type:>5}  {item.file_size:>10d}  {item.original_name}")
            print(f"{len(items)} item(s)")
        elif action == "add":
            for path in args.files:
                item = vault.add_file(path)
                print(f"Added {item.original_name}")
        elif action == "remove":
            target = vault.remove_file(_find_item(vault, args.name), destination=args.outdir)
            print(f"Restored {target}")
        elif action == "open":
            item = _find_item(vault, args.name)
            if args.output:
                with vault.open_item(item) as scratch:
                    shutil.copyfile(scratch, args.output)
                print(f"Wrote decrypted copy to {args.output}")
            else:
                with ComicSession.from_vault(
                    vault, item, limits=settings.archive_limits(), temp_dir=settings.temp_dir
                ) as session:
                    for e in session.entries:
                        print(f"{e.index + 1:5d}  {e.path}")
                    print(f"{session.page_count} page(s)")
        else:
            raise RuntimeError("Unknown vault command")
    finally:
        vault.lock()


# -------- Config --------

def cmd_config(args: argparse.Namespace, settings_path: str) -> None:
    if args.config_cmd == "show":
        settings = load_settings(settings_path)
        for key, value in sorted(vars(settings).items()):
            print(f"{key} = {value}")
        return
    changes = {}
    for pair in args.pairs:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        changes[key.strip()] = value.strip() or None
    update_settings(settings_path, **changes)
    print(f"Updated {', '.join(sorted(changes))}")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="comicvault",
        description="Comic archive reader core and encrypted vault",
        epilog="Supported inputs: CBZ/ZIP, CBR/RAR, CB7/7z, PDF, single images and image folders.",
    )
    ap.add_argument("--settings", default=None, help="Settings file (default ~/.comicvault/settings.json)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    # pages
    ap_pages = sub.add_parser("pages", help="List pages of a comic")
    ap_pages.add_argument("archive", help="Comic path")
    ap_pages.add_argument("--json", action="store_true", help="Emit JSON")

    # cover
    ap_cover = sub.add_parser("cover", help="Write the first page of a comic")
    ap_cover.add_argument("archive", help="Comic path")
    ap_cover.add_argument("output", help="Output image path")

    # extract
    ap_extract = sub.add_parser("extract", help="Extract pages")
    ap_extract.add_argument("archive", help="Comic path")
    ap_extract.add_argument("--outdir", default=".", help="Output directory")
    ap_extract.add_argument("--pages", help="1-based selection, e.g. 1,3-5 (default all)")
    ap_extract.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    # vault
    ap_vault = sub.add_parser("vault", help="Encrypted vault")
    ap_vault.add_argument("--vault", help="Vault directory (default from settings)")
    vsub = ap_vault.add_subparsers(dest="vault_cmd", required=True)
    for name, text in (("setup", "Create the vault"), ("list", "List vault items")):
        p = vsub.add_parser(name, help=text)
        p.add_argument("--password", help="Vault password")
    ap_vadd = vsub.add_parser("add", help="Encrypt files into the vault (originals are securely deleted)")
    ap_vadd.add_argument("files", nargs="+", help="Files to add")
    ap_vadd.add_argument("--password", help="Vault password")
    ap_vrm = vsub.add_parser("remove", help="Decrypt an item back out of the vault")
    ap_vrm.add_argument("name", help="Item name or id")
    ap_vrm.add_argument("--outdir", help="Destination directory or file (default original location)")
    ap_vrm.add_argument("--password", help="Vault password")
    ap_vopen = vsub.add_parser("open", help="Read an item without removing it")
    ap_vopen.add_argument("name", help="Item name or id")
    ap_vopen.add_argument("--output", help="Write a decrypted copy here instead of listing pages")
    ap_vopen.add_argument("--password", help="Vault password")
    ap_vpw = vsub.add_parser("passwd", help="Change the vault password")
    ap_vpw.add_argument("--password", help="Current password")
    ap_vpw.add_argument("--new-password", help="New password")
    ap_vdel = vsub.add_parser("destroy", help="Delete the vault and all items")
    ap_vdel.add_argument("--password", help="Vault password")
    ap_vdel.add_argument("--yes", action="store_true", help="Confirm deletion")

    # config
    ap_cfg = sub.add_parser("config", help="Show or change settings")
    csub = ap_cfg.add_subparsers(dest="config_cmd", required=True)
    csub.add_parser("show", help="Print current settings")
    ap_cset = csub.add_parser("set", help="Set key=value pairs")
    ap_cset.add_argument("pairs", nargs="+", help="key=value")

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    settings_path = args.settings or default_settings_path()
    try:
        if args.cmd == "config":
            cmd_config(args, settings_path)
            return
        settings = load_settings(settings_path)
        if args.cmd == "pages":
            cmd_pages(args.archive, settings, as_json=args.json)
        elif args.cmd == "cover":
            cmd_cover(args.archive, args.output, settings)
        elif args.cmd == "extract":
            cmd_extract(args.archive, args.outdir, settings, pages=args.pages, quiet=args.quiet)
        elif args.cmd == "vault":
            cmd_vault(args, settings)
        else:
            raise RuntimeError("Unknown command")
    except ComicVaultError as e:
        logger.debug("Command failed: %s", e)
        print(f"Error: {e.description}", file=sys.stderr)
        if e.recovery_suggestion:
            print(f"Hint: {e.recovery_suggestion}", file=sys.stderr)
        sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: file not found: {e.filename or e}", file=sys.stderr)
        sys.exit(2)
    except (OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
