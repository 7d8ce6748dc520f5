"""
Static error table - the last link of the explanation chain.

explain_error() is total: every code gets a non-empty answer, either a
specific entry or a range-specific generic one. Nothing in this module
performs I/O or raises for a valid int.
"""

from models import Explanation

SPECIFIC_CONFIDENCE = 0.9
GENERIC_CONFIDENCE = 0.3

# code -> (explanation, fixes)
STATIC_ERRORS: dict[int, tuple[str, list[str]]] = {
    0: (
        "Operation completed successfully with no errors.",
        ["No action needed - this indicates successful execution"],
    ),
    1: (
        "The instruction data provided is invalid or malformed. The data passed to the program "
        "instruction doesn't match the format it expects.",
        [
            "Verify instruction data serialization matches program expectations",
            "Check that all required parameters are provided with correct types",
            "Use anchor test to validate instruction format and data structure",
        ],
    ),
    100: (
        "A required instruction is missing from the transaction.",
        [
            "Review transaction structure for missing setup or prerequisite instructions",
            "Check program documentation for the required instruction sequence",
            "Use solana logs to trace execution and find the missing step",
        ],
    ),
    2000: (
        "Seeds constraint violation during PDA derivation. The provided seeds don't match the constraint.",
        [
            "Verify seed values exactly match the program constraint definition",
            "Check seed order and data types in PDA derivation",
            "Ensure the correct program ID is used for findProgramAddress",
        ],
    ),
    2001: (
        "HasOne constraint violation - the account doesn't have the expected relationship to another account.",
        [
            "Verify the relationship field on the account is set correctly",
            "Check that the correct related account is passed to the instruction",
            "Validate account relationships before executing the instruction",
        ],
    ),
    2002: (
        "Signer constraint violation - an account that must sign the transaction did not.",
        [
            "Ensure the account is marked as a signer in the transaction",
            "Verify the correct signer account is provided to the instruction",
            "Check the signing process and wallet connection",
        ],
    ),
    2003: (
        "Mut constraint violation - an account marked mutable was not passed as writable.",
        [
            "Mark the account as mutable in the instruction context",
            "Verify the account is writable in the transaction",
            "Check that the account is not passed read-only by the client",
        ],
    ),
    2004: (
        "Owner constraint violation - the account is not owned by the expected program.",
        [
            "Verify the account is owned by the correct program",
            "Check account initialization and ownership transfer",
            "Ensure the right account is used for this instruction",
        ],
    ),
    3012: (
        "AccountNotInitialized - the program expected an initialized account but received an empty one.",
        [
            "Run the initialize instruction before using the account",
            "Check that the account address is derived correctly",
            "Use solana account <address> to inspect the account data",
        ],
    ),
    6000: (
        "Insufficient funds - the account balance is too low for the requested operation.",
        [
            "Check the account balance before submitting the transaction",
            "Verify the token account holds enough for the operation",
            "Add balance validation in the program before processing",
        ],
    ),
    6001: (
        "Unauthorized - the caller doesn't have permission to perform this operation.",
        [
            "Verify the correct authority account is being used",
            "Check access control rules in the program",
            "Ensure the signer has the required privileges",
        ],
    ),
    6002: (
        "Invalid account state - the account is not in the expected state for this operation.",
        [
            "Check the account's current state before the operation",
            "Verify account initialization and setup",
            "Ensure prerequisite instructions have completed",
        ],
    ),
    6003: (
        "Arithmetic overflow or underflow during a calculation.",
        [
            "Use checked arithmetic (checked_add, checked_sub, checked_mul)",
            "Validate input ranges before doing arithmetic",
            "Add unit tests for boundary values with anchor test",
        ],
    ),
}


def has_static_explanation(code: int) -> bool:
    """True when the table holds a specific (non-generic) entry for code."""
    return code in STATIC_ERRORS


def available_codes() -> list[int]:
    """Codes with a specific entry, ascending."""
    return sorted(STATIC_ERRORS)


def generic_explanation(code: int) -> Explanation:
    """Range-specific answer for codes without a table entry."""
    if 0 <= code <= 999:
        text = f"System error {code}. This appears to be a low-level Solana runtime error."
        fixes = [
            "Check Solana documentation for system error codes",
            "Review transaction structure and account setup",
            "Use solana logs to get more detailed error information",
        ]
    elif 2000 <= code <= 2999:
        text = f"Anchor constraint error {code}. A constraint validation failed in your Anchor program."
        fixes = [
            "Review the program's account constraints and validation rules",
            "Check that all required account relationships are set up",
            "Verify account data matches the expected constraints",
        ]
    elif code >= 6000:
        text = f"Custom program error {code}. This is a program-specific error defined by the developer."
        fixes = [
            "Check the program's source code or IDL for this error code",
            "Review the conditions that trigger this error",
            "Contact the program developer or check community resources",
        ]
    else:
        text = f"Unknown error code {code}. It is not in the standard Solana or Anchor error ranges."
        fixes = [
            "Verify the error code is correct and properly formatted",
            "Check whether this is a custom error from a specific program",
            "Use solana logs and anchor test for more detailed debugging information",
        ]

    return Explanation(code=code, explanation=text, fixes=fixes, source="static", confidence=GENERIC_CONFIDENCE)


def explain_error(code: int) -> Explanation:
    """Look up code. Always returns a non-empty explanation."""
    entry = STATIC_ERRORS.get(code)
    if entry is None:
        return generic_explanation(code)
    text, fixes = entry
    return Explanation(code=code, explanation=text, fixes=list(fixes), source="static", confidence=SPECIFIC_CONFIDENCE)
