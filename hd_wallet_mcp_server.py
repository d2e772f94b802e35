#!/usr/bin/env python3
"""
MCP server for the BTC vault.

Wraps hd_wallet.py as MCP tools: wallet lifecycle (create, restore, unlock,
lock), addresses, message and PSBT signing, network / lookup settings,
password management and encrypted backups. The wallet handle is the
process-wide default built from the environment (see wallet_config.py).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from btc_psbt import decode_psbt
from hd_wallet import get_default_wallet
from wallet_errors import WalletError

logger = logging.getLogger(__name__)

app = Server("btc_vault")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ok_response(data: dict[str, Any]) -> List[TextContent]:
    data["success"] = True
    return [TextContent(type="text", text=json.dumps(data, default=str))]


def _error_response(message: str, code: str | None = None) -> List[TextContent]:
    payload: dict[str, Any] = {"success": False, "error": message}
    if code:
        payload["code"] = code
    return [TextContent(type="text", text=json.dumps(payload))]


def _optional_str(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid '{key}'. Must be a string.")
    return value or None


_PASSWORD_PROPERTY = {"type": "string", "description": "Wallet password"}
_CUSTOM_PATHS_PROPERTY = {
    "type": "object",
    "description": "Optional custom derivation paths, e.g. {\"payment\": \"m/84'/0'/0'/0/5\"}",
    "properties": {
        "payment": {"type": "string"},
        "ordinals": {"type": "string"},
    },
}


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        # -- Lifecycle --
        Tool(
            name="vault_status",
            description="Return whether a wallet exists, is unlocked, its network and password/backup state.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="vault_create",
            description=(
                "Create a new HD wallet and return its seed phrase. "
                "The phrase is shown once and must be backed up by the user."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "password": _PASSWORD_PROPERTY,
                    "mnemonic_passphrase": {
                        "type": "string",
                        "description": "Optional BIP39 passphrase",
                    },
                },
            },
        ),
        Tool(
            name="vault_restore",
            description="Restore a wallet from a BIP39 seed phrase.",
            inputSchema={
                "type": "object",
                "properties": {
                    "mnemonic": {"type": "string", "description": "BIP39 seed phrase"},
                    "password": _PASSWORD_PROPERTY,
                    "mnemonic_passphrase": {
                        "type": "string",
                        "description": "Optional BIP39 passphrase",
                    },
                    "custom_paths": _CUSTOM_PATHS_PROPERTY,
                },
                "required": ["mnemonic"],
            },
        ),
        Tool(
            name="vault_unlock",
            description="Unlock the stored wallet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "password": _PASSWORD_PROPERTY,
                    "mnemonic_passphrase": {
                        "type": "string",
                        "description": "BIP39 passphrase, if the wallet uses one",
                    },
                },
            },
        ),
        Tool(
            name="vault_lock",
            description="Lock the wallet and drop all key material from memory.",
            inputSchema={"type": "object", "properties": {}},
        ),
        # -- Addresses & signing --
        Tool(
            name="vault_get_addresses",
            description=(
                "Return the payment (P2WPKH) and ordinals (P2TR) addresses with "
                "public keys and derivation paths."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "purposes": {
                        "type": "array",
                        "items": {"type": "string", "enum": ["payment", "ordinals"]},
                        "description": "Address purposes (default: payment, ordinals)",
                    },
                },
            },
        ),
        Tool(
            name="vault_sign_message",
            description=(
                "Sign a message with the key of a wallet address. "
                "ECDSA (BIP137) for non-Taproot addresses, BIP322-simple for Taproot."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "Message to sign"},
                    "address": {"type": "string", "description": "Wallet address to sign with"},
                    "protocol": {
                        "type": "string",
                        "enum": ["ecdsa", "bip322-simple"],
                        "description": "Signing protocol (default depends on address type)",
                    },
                },
                "required": ["message", "address"],
            },
        ),
        Tool(
            name="vault_verify_message",
            description="Verify a signed message (BIP137 ECDSA or BIP322-simple for Taproot).",
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {"type": "string"},
                    "signature": {"type": "string", "description": "Base64 signature"},
                    "address": {"type": "string"},
                },
                "required": ["message", "signature", "address"],
            },
        ),
        Tool(
            name="vault_sign_psbt",
            description=(
                "Sign PSBT inputs with wallet keys (P2PKH, P2SH-P2WPKH, P2WPKH, Taproot key path). "
                "Returns the signed PSBT in base64."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "PSBT in base64 or hex"},
                    "inputs": {
                        "type": "array",
                        "description": "Inputs to sign",
                        "items": {
                            "type": "object",
                            "properties": {
                                "index": {"type": "integer"},
                                "address": {"type": "string"},
                                "derivation_path": {"type": "string"},
                                "sighash_types": {
                                    "type": "array",
                                    "items": {"type": "integer"},
                                },
                                "finalize": {"type": "boolean"},
                            },
                            "required": ["index"],
                        },
                    },
                },
                "required": ["psbt", "inputs"],
            },
        ),
        Tool(
            name="vault_decode_psbt",
            description="Decode a PSBT and return its inputs, outputs and signing state.",
            inputSchema={
                "type": "object",
                "properties": {
                    "psbt": {"type": "string", "description": "PSBT in base64 or hex"},
                },
                "required": ["psbt"],
            },
        ),
        # -- Settings --
        Tool(
            name="vault_set_network",
            description="Switch the wallet between mainnet and testnet (persisted).",
            inputSchema={
                "type": "object",
                "properties": {
                    "network": {"type": "string", "enum": ["mainnet", "testnet"]},
                },
                "required": ["network"],
            },
        ),
        Tool(
            name="vault_set_lookup_config",
            description=(
                "Widen or narrow the address -> derivation path search window "
                "(clamped to 100 accounts / 200 receive / 200 change)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "max_account_index": {"type": "integer", "minimum": 0},
                    "receive_window": {"type": "integer", "minimum": 0},
                    "change_window": {"type": "integer", "minimum": 0},
                },
            },
        ),
        # -- Password --
        Tool(
            name="vault_set_password",
            description="Protect a passwordless wallet with a password (at least 8 characters).",
            inputSchema={
                "type": "object",
                "properties": {"password": _PASSWORD_PROPERTY},
                "required": ["password"],
            },
        ),
        Tool(
            name="vault_change_password",
            description="Change the wallet password. All stored secrets are re-encrypted.",
            inputSchema={
                "type": "object",
                "properties": {
                    "old_password": {"type": "string", "description": "Current wallet password"},
                    "new_password": {"type": "string", "description": "New wallet password"},
                },
                "required": ["old_password", "new_password"],
            },
        ),
        Tool(
            name="vault_remove_password",
            description=(
                "Remove password protection. The wallet key is then kept by the "
                "local platform key store."
            ),
            inputSchema={
                "type": "object",
                "properties": {"password": {"type": "string", "description": "Current wallet password"}},
                "required": ["password"],
            },
        ),
        # -- Backup --
        Tool(
            name="vault_export_backup",
            description=(
                "Export an encrypted, authenticated backup of the wallet. "
                "Requires a password-protected wallet."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "backup_password": {"type": "string"},
                },
                "required": ["backup_password"],
            },
        ),
        Tool(
            name="vault_import_backup",
            description="Restore a wallet from an exported backup string.",
            inputSchema={
                "type": "object",
                "properties": {
                    "backup": {"type": "string"},
                    "backup_password": {"type": "string"},
                    "wallet_password": {"type": "string"},
                    "overwrite": {
                        "type": "boolean",
                        "description": "Replace an existing wallet",
                    },
                },
                "required": ["backup", "backup_password", "wallet_password"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    try:
        # Lifecycle
        if name == "vault_status":
            return await _handle_status()
        if name == "vault_create":
            return await _handle_create(arguments)
        if name == "vault_restore":
            return await _handle_restore(arguments)
        if name == "vault_unlock":
            return await _handle_unlock(arguments)
        if name == "vault_lock":
            return await _handle_lock()

        # Addresses & signing
        if name == "vault_get_addresses":
            return await _handle_get_addresses(arguments)
        if name == "vault_sign_message":
            return await _handle_sign_message(arguments)
        if name == "vault_verify_message":
            return await _handle_verify_message(arguments)
        if name == "vault_sign_psbt":
            return await _handle_sign_psbt(arguments)
        if name == "vault_decode_psbt":
            return await _handle_decode_psbt(arguments)

        # Settings
        if name == "vault_set_network":
            return await _handle_set_network(arguments)
        if name == "vault_set_lookup_config":
            return await _handle_set_lookup_config(arguments)

        # Password
        if name == "vault_set_password":
            return await _handle_set_password(arguments)
        if name == "vault_change_password":
            return await _handle_change_password(arguments)
        if name == "vault_remove_password":
            return await _handle_remove_password(arguments)

        # Backup
        if name == "vault_export_backup":
            return await _handle_export_backup(arguments)
        if name == "vault_import_backup":
            return await _handle_import_backup(arguments)

    except WalletError as exc:
        logger.info("Tool %s failed: %s", name, exc.code)
        return _error_response(str(exc), exc.code)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Tool %s failed: %s", name, type(exc).__name__)
        return _error_response(str(exc))

    return _error_response(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# Handlers -- Lifecycle
# ---------------------------------------------------------------------------


async def _handle_status() -> List[TextContent]:
    wallet = await asyncio.to_thread(get_default_wallet)
    status = await asyncio.to_thread(wallet.status)
    return _ok_response(status)


async def _handle_create(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await asyncio.to_thread(get_default_wallet)
    result = await asyncio.to_thread(
        wallet.create,
        _optional_str(arguments, "password"),
        _optional_str(arguments, "mnemonic_passphrase"),
    )
    result["network"] = wallet.network
    return _ok_response(result)


async def _handle_restore(arguments: dict[str, Any]) -> List[TextContent]:
    mnemonic = (arguments.get("mnemonic") or "").strip()
    if not mnemonic:
        return _error_response("Missing 'mnemonic' parameter.")
    custom_paths = arguments.get("custom_paths")
    if custom_paths is not None and not isinstance(custom_paths, dict):
        return _error_response("Invalid 'custom_paths'. Expected an object.")

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(
        wallet.restore,
        mnemonic,
        _optional_str(arguments, "password"),
        _optional_str(arguments, "mnemonic_passphrase"),
        custom_paths,
    )
    return _ok_response({"restored": True, "network": wallet.network})


async def _handle_unlock(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(
        wallet.unlock,
        _optional_str(arguments, "password"),
        _optional_str(arguments, "mnemonic_passphrase"),
    )
    return _ok_response({"unlocked": True, "network": wallet.network})


async def _handle_lock() -> List[TextContent]:
    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(wallet.lock)
    return _ok_response({"unlocked": False})


# ---------------------------------------------------------------------------
# Handlers -- Addresses & signing
# ---------------------------------------------------------------------------


async def _handle_get_addresses(arguments: dict[str, Any]) -> List[TextContent]:
    purposes = arguments.get("purposes")
    if purposes is not None and (
        not isinstance(purposes, list) or not all(isinstance(p, str) for p in purposes)
    ):
        return _error_response("Invalid 'purposes'. Expected an array of strings.")

    wallet = await asyncio.to_thread(get_default_wallet)
    addresses = await asyncio.to_thread(wallet.get_addresses, purposes)
    return _ok_response({"addresses": addresses, "network": wallet.network})


async def _handle_sign_message(arguments: dict[str, Any]) -> List[TextContent]:
    message = arguments.get("message")
    if not isinstance(message, str):
        return _error_response("Missing 'message' parameter.")
    address = (arguments.get("address") or "").strip()
    if not address:
        return _error_response("Missing 'address' parameter.")

    wallet = await asyncio.to_thread(get_default_wallet)
    result = await asyncio.to_thread(
        wallet.sign_message, message, address, _optional_str(arguments, "protocol")
    )
    return _ok_response(result)


async def _handle_verify_message(arguments: dict[str, Any]) -> List[TextContent]:
    message = arguments.get("message")
    signature = arguments.get("signature", "")
    address = arguments.get("address", "")
    if not isinstance(message, str) or not signature or not address:
        return _error_response("Missing required parameters: message, signature, address.")

    wallet = await asyncio.to_thread(get_default_wallet)
    result = await asyncio.to_thread(wallet.verify_message, message, signature, address)
    return _ok_response(result)


async def _handle_sign_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt_str = (arguments.get("psbt") or "").strip()
    if not psbt_str:
        return _error_response("Missing 'psbt' parameter.")
    inputs = arguments.get("inputs")
    if not inputs or not isinstance(inputs, list) or not all(isinstance(i, dict) for i in inputs):
        return _error_response("Missing or invalid 'inputs' array.")

    wallet = await asyncio.to_thread(get_default_wallet)
    signed = await asyncio.to_thread(wallet.sign_psbt, psbt_str, inputs)
    return _ok_response({
        "psbt": signed,
        "signed_inputs": [i.get("index") for i in inputs],
        "network": wallet.network,
    })


async def _handle_decode_psbt(arguments: dict[str, Any]) -> List[TextContent]:
    psbt_str = (arguments.get("psbt") or "").strip()
    if not psbt_str:
        return _error_response("Missing 'psbt' parameter.")

    result = await asyncio.to_thread(decode_psbt, psbt_str)
    return _ok_response(result)


# ---------------------------------------------------------------------------
# Handlers -- Settings
# ---------------------------------------------------------------------------


async def _handle_set_network(arguments: dict[str, Any]) -> List[TextContent]:
    network = (arguments.get("network") or "").strip().lower()
    if network not in ("mainnet", "testnet"):
        return _error_response("Invalid 'network'. Expected 'mainnet' or 'testnet'.")

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(wallet.set_network, network)
    return _ok_response({"network": wallet.network})


async def _handle_set_lookup_config(arguments: dict[str, Any]) -> List[TextContent]:
    config = {
        key: arguments[key]
        for key in ("max_account_index", "receive_window", "change_window")
        if key in arguments
    }
    wallet = await asyncio.to_thread(get_default_wallet)
    lookup = await asyncio.to_thread(lambda: wallet.set_address_lookup_config(**config))
    return _ok_response({"lookup": lookup})


# ---------------------------------------------------------------------------
# Handlers -- Password
# ---------------------------------------------------------------------------


async def _handle_set_password(arguments: dict[str, Any]) -> List[TextContent]:
    password = arguments.get("password") or ""
    if not password:
        return _error_response("Missing 'password' parameter.")

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(wallet.set_password, password)
    return _ok_response({"has_password": True})


async def _handle_change_password(arguments: dict[str, Any]) -> List[TextContent]:
    old_password = arguments.get("old_password") or ""
    new_password = arguments.get("new_password") or ""
    if not old_password or not new_password:
        return _error_response("Missing required parameters: old_password, new_password.")

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(wallet.change_password, old_password, new_password)
    return _ok_response({"has_password": True})


async def _handle_remove_password(arguments: dict[str, Any]) -> List[TextContent]:
    password = arguments.get("password") or ""
    if not password:
        return _error_response("Missing 'password' parameter.")

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(wallet.remove_password, password)
    return _ok_response({"has_password": False})


# ---------------------------------------------------------------------------
# Handlers -- Backup
# ---------------------------------------------------------------------------


async def _handle_export_backup(arguments: dict[str, Any]) -> List[TextContent]:
    backup_password = arguments.get("backup_password") or ""
    if not backup_password:
        return _error_response("Missing 'backup_password' parameter.")

    wallet = await asyncio.to_thread(get_default_wallet)
    backup = await asyncio.to_thread(wallet.export_backup, backup_password)
    return _ok_response({"backup": backup, "network": wallet.network})


async def _handle_import_backup(arguments: dict[str, Any]) -> List[TextContent]:
    backup = (arguments.get("backup") or "").strip()
    backup_password = arguments.get("backup_password") or ""
    wallet_password = arguments.get("wallet_password") or ""
    if not backup or not backup_password or not wallet_password:
        return _error_response(
            "Missing required parameters: backup, backup_password, wallet_password."
        )

    wallet = await asyncio.to_thread(get_default_wallet)
    await asyncio.to_thread(
        wallet.import_backup,
        backup,
        backup_password,
        wallet_password,
        arguments.get("overwrite") is True,
    )
    return _ok_response({"restored": True, "network": wallet.network})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
