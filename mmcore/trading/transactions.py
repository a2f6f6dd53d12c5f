from __future__ import annotations

import base64
from typing import Any

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from .errors import ExecutionError
from .types import LedgerContext


def sign_instructions(
    instructions: list[Instruction],
    *,
    keypair: Keypair,
    context: LedgerContext,
) -> VersionedTransaction:
    if not instructions:
        raise ExecutionError("Cannot sign an empty instruction list.")

    message = MessageV0.try_compile(
        keypair.pubkey(),
        instructions,
        [],
        Hash.from_string(context.blockhash),
    )
    signed_tx = VersionedTransaction(message, [keypair])
    if not signed_tx.signatures:
        raise ExecutionError("Failed to sign transaction.")
    return signed_tx


def transaction_reference(transaction: VersionedTransaction) -> str:
    return str(transaction.signatures[0])


def encode_transaction(transaction: VersionedTransaction) -> str:
    return base64.b64encode(bytes(transaction)).decode("ascii")


def build_sol_transfer(*, owner: Pubkey, destination: Pubkey, lamports: int) -> list[Instruction]:
    if lamports <= 0:
        return []
    return [
        transfer(
            TransferParams(
                from_pubkey=owner,
                to_pubkey=destination,
                lamports=int(lamports),
            )
        )
    ]


def decode_instruction(raw: Any, *, section: str) -> Instruction:
    if not isinstance(raw, dict):
        raise ExecutionError(f"Invalid instruction payload in {section}: {raw}")

    program_id = str(raw.get("programId") or "").strip()
    if not program_id:
        raise ExecutionError(f"Instruction programId is missing in {section}")

    raw_accounts = raw.get("accounts")
    if not isinstance(raw_accounts, list):
        raise ExecutionError(f"Instruction accounts are missing in {section}")

    metas: list[AccountMeta] = []
    for idx, account in enumerate(raw_accounts):
        if not isinstance(account, dict):
            raise ExecutionError(f"Instruction account[{idx}] is invalid in {section}: {account}")
        pubkey = str(account.get("pubkey") or "").strip()
        if not pubkey:
            raise ExecutionError(f"Instruction account[{idx}] pubkey is missing in {section}")
        metas.append(
            AccountMeta(
                pubkey=Pubkey.from_string(pubkey),
                is_signer=bool(account.get("isSigner")),
                is_writable=bool(account.get("isWritable")),
            )
        )

    try:
        data = base64.b64decode(str(raw.get("data") or ""), validate=True)
    except ValueError as error:
        raise ExecutionError(f"Instruction data decode failed in {section}: {error}") from error

    return Instruction(Pubkey.from_string(program_id), data, metas)


def decode_instruction_list(raw: Any, *, section: str) -> list[Instruction]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ExecutionError(f"Instruction list is invalid in {section}: {raw}")
    return [decode_instruction(item, section=f"{section}[{index}]") for index, item in enumerate(raw)]
