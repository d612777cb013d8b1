"""
Solana program analyzer.

Covers native solana-program code and Anchor programs. Static rules
inspect individual functions and Anchor account structs. Semantic
rules correlate static findings and look for state/token patterns
that only make sense across a whole instruction handler.
"""

from __future__ import annotations

import re
from typing import List

from chainaudit.app.analyzers.rust_common import (
    RuleSpec,
    RustNetworkAnalyzer,
    compound_risk_findings,
    line_of,
    lines_matching,
    unchecked_arithmetic,
)
from chainaudit.app.schemas.analysis import ParseResult, StructInfo
from chainaudit.app.schemas.findings import Finding, FindingSource, Severity


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------

MISSING_SIGNER_CHECK = RuleSpec(
    rule_id="SOL-001",
    title="Missing Signer Check",
    description=(
        "A public instruction handler moves lamports or invokes another "
        "program without verifying that the authorizing account signed."
    ),
    severity=Severity.HIGH,
    confidence=0.85,
    exploitability=0.8,
    category="access_control",
    recommendation="Check `account.is_signer` or use Anchor's `Signer<'info>` type.",
    cwe="CWE-862",
    impact="Any account can trigger privileged operations.",
)

UNVALIDATED_ACCOUNT_DATA = RuleSpec(
    rule_id="SOL-002",
    title="Account Data Deserialized Without Validation",
    description=(
        "Account data is deserialized without verifying the account owner "
        "or discriminator, so attacker-crafted accounts are accepted."
    ),
    severity=Severity.HIGH,
    confidence=0.9,
    exploitability=0.7,
    category="data_validation",
    recommendation="Verify `account.owner == program_id` before deserializing.",
    cwe="CWE-20",
)

MISSING_OWNER_CHECK = RuleSpec(
    rule_id="SOL-003",
    title="Missing Owner Check",
    description=(
        "Account data or lamports are mutated without checking which "
        "program owns the account."
    ),
    severity=Severity.CRITICAL,
    confidence=0.95,
    exploitability=0.9,
    category="access_control",
    recommendation="Compare `account.owner` with the expected program id first.",
    cwe="CWE-284",
    impact="Fake accounts can be substituted to drain or corrupt state.",
)

MISSING_RENT_EXEMPTION = RuleSpec(
    rule_id="SOL-004",
    title="Account Created Without Rent Exemption",
    description="An account is created without funding it to the rent-exempt minimum.",
    severity=Severity.MEDIUM,
    confidence=0.8,
    exploitability=0.3,
    category="resource_management",
    recommendation="Fund new accounts with `Rent::get()?.minimum_balance(size)`.",
    cwe="CWE-400",
)

UNCANONICAL_PDA = RuleSpec(
    rule_id="SOL-005",
    title="Non-Canonical PDA Derivation",
    description=(
        "`create_program_address` accepts caller-supplied bumps, allowing "
        "several valid addresses for the same seeds."
    ),
    severity=Severity.HIGH,
    confidence=0.75,
    exploitability=0.6,
    category="cryptography",
    recommendation="Derive PDAs with `find_program_address` and store the canonical bump.",
    cwe="CWE-330",
)

ARBITRARY_CPI = RuleSpec(
    rule_id="SOL-006",
    title="Arbitrary Cross-Program Invocation",
    description=(
        "A cross-program invocation targets a program id that is never "
        "compared with a known program."
    ),
    severity=Severity.CRITICAL,
    confidence=0.9,
    exploitability=0.85,
    category="cross_program_invocation",
    recommendation="Assert the invoked program id equals the expected program's ID.",
    cwe="CWE-829",
    impact="Attacker-controlled programs execute with the caller's signatures.",
)

UNCONSTRAINED_ANCHOR_ACCOUNT = RuleSpec(
    rule_id="SOL-007",
    title="Unconstrained Anchor Account",
    description=(
        "An `AccountInfo` or `UncheckedAccount` field has no `#[account(...)]` "
        "constraint, so Anchor performs no validation on it."
    ),
    severity=Severity.HIGH,
    confidence=0.85,
    exploitability=0.7,
    category="anchor_security",
    recommendation="Use a typed `Account<'info, T>` or add explicit constraints.",
    cwe="CWE-20",
)

MISSING_BUMP = RuleSpec(
    rule_id="SOL-008",
    title="PDA Seeds Without Bump Constraint",
    description="An Anchor `seeds` constraint is declared without `bump`.",
    severity=Severity.MEDIUM,
    confidence=0.8,
    exploitability=0.4,
    category="anchor_security",
    recommendation="Add `bump` (or `bump = <stored_bump>`) next to `seeds`.",
    cwe="CWE-330",
)

INTEGER_OVERFLOW = RuleSpec(
    rule_id="SOL-009",
    title="Unchecked Arithmetic Overflow",
    description="Value arithmetic uses `+` or `*` without overflow checks.",
    severity=Severity.HIGH,
    confidence=0.75,
    exploitability=0.6,
    category="arithmetic_safety",
    recommendation="Use `checked_add` / `checked_mul` and handle `None`.",
    cwe="CWE-190",
)

INTEGER_UNDERFLOW = RuleSpec(
    rule_id="SOL-010",
    title="Unchecked Arithmetic Underflow",
    description="Value arithmetic uses `-` without underflow checks.",
    severity=Severity.MEDIUM,
    confidence=0.8,
    exploitability=0.5,
    category="arithmetic_safety",
    recommendation="Use `checked_sub` and reject insufficient balances explicitly.",
    cwe="CWE-191",
)

UNGUARDED_STATE_TRANSITION = RuleSpec(
    rule_id="SOL-101",
    title="Unguarded State Transition",
    description=(
        "A handler changes a state or status field without checking the "
        "current state first."
    ),
    severity=Severity.MEDIUM,
    confidence=0.6,
    exploitability=0.5,
    category="state_management",
    recommendation="Validate the current state with `require!` before transitioning.",
    cwe="CWE-372",
    source=FindingSource.SEMANTIC,
)

TOKEN_OPERATION_WITHOUT_AUTHORITY = RuleSpec(
    rule_id="SOL-102",
    title="Token Operation Without Authority Validation",
    description="An SPL token operation is issued without referencing an authority.",
    severity=Severity.HIGH,
    confidence=0.9,
    exploitability=0.8,
    category="token_security",
    recommendation="Validate the token authority account and require its signature.",
    cwe="CWE-862",
    source=FindingSource.SEMANTIC,
)

COMPOUND_BUSINESS_LOGIC_RISK = RuleSpec(
    rule_id="SOL-103",
    title="Compound Business Logic Risk",
    description=(
        "The same handler combines an access-control gap with value-moving "
        "logic, which together form an exploitable path."
    ),
    severity=Severity.MEDIUM,
    confidence=0.7,
    exploitability=0.7,
    category="business_logic",
    recommendation="Review the handler end to end and gate value movement on authorization.",
    cwe="CWE-840",
    source=FindingSource.SEMANTIC,
)


# ----------------------------------------------------------------------
# Patterns
# ----------------------------------------------------------------------

_PRIVILEGED_OP = re.compile(
    r"\b(invoke|invoke_signed|transfer|set_authority)\s*\(|try_borrow_mut_lamports\s*\("
)
_SIGNER_CHECK = re.compile(r"is_signer|Signer\s*<|has_one|constraint\s*=")
_DESERIALIZE = re.compile(
    r"try_from_slice\s*\(|try_deserialize_unchecked\s*\(|unpack_unchecked\s*\("
)
_OWNER_CHECK = re.compile(r"\.owner\b|check_id\s*\(|discriminator|Account\s*<")
_MUTATE_ACCOUNT = re.compile(r"try_borrow_mut_(lamports|data)\s*\(")
_CREATE_ACCOUNT = re.compile(r"\bcreate_account\s*\(")
_RENT = re.compile(r"rent|Rent::|minimum_balance", re.IGNORECASE)
_CREATE_PDA = re.compile(r"(?<!find_)create_program_address\s*\(")
_CPI = re.compile(r"\binvoke(_signed)?\s*\(")
_PROGRAM_ID_CHECK = re.compile(
    r"program_id\s*==|==\s*\w*program_id|\.key\s*\(\s*\)\s*==|::ID\b|::id\s*\(|check_id|check_program_account|Program\s*<"
)
_ACCOUNT_ATTRIBUTE = re.compile(r"#\[account\((.*?)\)\]", re.DOTALL)
_RAW_ACCOUNT_FIELD = re.compile(
    r"^\s*pub\s+\w+\s*:\s*(AccountInfo|UncheckedAccount)\s*<"
)
_STATE_ASSIGNMENT = re.compile(r"\.(state|status|phase|stage)\s*=[^=]")
_STATE_GUARD = re.compile(r"require!|require_eq!|assert|\bif\b|\bmatch\b")
_TOKEN_OP = re.compile(
    r"token::(transfer|mint_to|burn|approve)\s*\(|spl_token::instruction::(transfer|mint_to|burn|approve)\s*\("
)


def _is_accounts_struct(struct: StructInfo) -> bool:
    return any("Accounts" in attr for attr in struct.attributes)


class SolanaAnalyzer(RustNetworkAnalyzer):
    network = "solana"

    glossary = {
        "PDA": "Program Derived Address; an address owned by a program and derived from seeds.",
        "CPI": "Cross-Program Invocation; one program calling another.",
        "Signer": "An account whose private key signed the transaction.",
        "Rent Exemption": "Minimum lamport balance keeping an account alive indefinitely.",
        "Anchor": "Framework generating account validation for Solana programs.",
        "SPL Token": "The Solana Program Library token standard.",
    }

    framework_markers = {
        "anchor-lang": "anchor",
        "anchor-spl": "anchor",
        "solana-program": "solana-program",
        "spl-token": "spl-token",
    }

    feature_markers = {
        r"#\[program\]": "anchor_program",
        r"\binvoke(_signed)?\s*\(": "cross_program_invocation",
        r"find_program_address|seeds\s*=": "pda",
        r"token::|spl_token": "token_operations",
    }

    # ------------------------------------------------------------------
    # Static rules
    # ------------------------------------------------------------------

    def _static_findings(self, parsed: ParseResult) -> List[Finding]:
        findings: List[Finding] = []

        for parsed_file in parsed.files:
            for fn in parsed_file.functions:
                findings.extend(self._function_findings(fn, parsed_file.source))

            for struct in parsed_file.structs:
                if _is_accounts_struct(struct):
                    findings.extend(self._accounts_struct_findings(struct))

        return findings

    def _function_findings(self, fn, file_source: str) -> List[Finding]:
        findings: List[Finding] = []

        def first(pattern):
            return next(lines_matching(fn, pattern), None)

        # SOL-001: reported on the handler itself
        if (
            fn.is_public
            and not _SIGNER_CHECK.search(file_source)
            and first(_PRIVILEGED_OP) is not None
        ):
            findings.append(
                MISSING_SIGNER_CHECK.finding(
                    file=fn.file,
                    line=fn.line,
                    end_line=fn.end_line,
                    snippet=fn.signature,
                    function=fn.name,
                )
            )

        has_owner_check = _OWNER_CHECK.search(fn.body) is not None

        # SOL-002
        if not has_owner_check:
            for number, text in lines_matching(fn, _DESERIALIZE):
                findings.append(
                    UNVALIDATED_ACCOUNT_DATA.finding(
                        file=fn.file, line=number, snippet=text, function=fn.name
                    )
                )

        # SOL-003
        if not has_owner_check:
            hit = first(_MUTATE_ACCOUNT)
            if hit is not None:
                findings.append(
                    MISSING_OWNER_CHECK.finding(
                        file=fn.file, line=hit[0], snippet=hit[1], function=fn.name
                    )
                )

        # SOL-004
        if not _RENT.search(fn.body):
            for number, text in lines_matching(fn, _CREATE_ACCOUNT):
                findings.append(
                    MISSING_RENT_EXEMPTION.finding(
                        file=fn.file, line=number, snippet=text, function=fn.name
                    )
                )

        # SOL-005
        for number, text in lines_matching(fn, _CREATE_PDA):
            findings.append(
                UNCANONICAL_PDA.finding(
                    file=fn.file, line=number, snippet=text, function=fn.name
                )
            )

        # SOL-006
        if not _PROGRAM_ID_CHECK.search(fn.body):
            for number, text in lines_matching(fn, _CPI):
                findings.append(
                    ARBITRARY_CPI.finding(
                        file=fn.file, line=number, snippet=text, function=fn.name
                    )
                )

        # SOL-009 / SOL-010
        findings.extend(
            unchecked_arithmetic(
                fn,
                overflow_rule=INTEGER_OVERFLOW,
                underflow_rule=INTEGER_UNDERFLOW,
            )
        )

        return findings

    def _accounts_struct_findings(self, struct: StructInfo) -> List[Finding]:
        findings: List[Finding] = []
        lines = struct.body.splitlines()

        # SOL-007
        for offset, text in enumerate(lines):
            if not _RAW_ACCOUNT_FIELD.match(text):
                continue
            previous = next(
                (lines[i].strip() for i in range(offset - 1, -1, -1) if lines[i].strip()),
                "",
            )
            if previous.startswith("///") or "#[account(" in previous:
                continue
            findings.append(
                UNCONSTRAINED_ANCHOR_ACCOUNT.finding(
                    file=struct.file,
                    line=struct.line + offset,
                    snippet=text,
                    function=struct.name,
                )
            )

        # SOL-008
        for match in _ACCOUNT_ATTRIBUTE.finditer(struct.body):
            constraint = match.group(1)
            if "seeds" in constraint and "bump" not in constraint:
                findings.append(
                    MISSING_BUMP.finding(
                        file=struct.file,
                        line=struct.line + line_of(struct.body, match.start()) - 1,
                        snippet=match.group(0),
                        function=struct.name,
                    )
                )

        return findings

    # ------------------------------------------------------------------
    # Semantic rules
    # ------------------------------------------------------------------

    def _semantic_findings(
        self, findings: List[Finding], parsed: ParseResult
    ) -> List[Finding]:
        results: List[Finding] = []

        for fn in parsed.functions():
            if fn.is_public and not _STATE_GUARD.search(fn.body):
                hit = next(lines_matching(fn, _STATE_ASSIGNMENT), None)
                if hit is not None:
                    results.append(
                        UNGUARDED_STATE_TRANSITION.finding(
                            file=fn.file, line=hit[0], snippet=hit[1], function=fn.name
                        )
                    )

            if "authority" not in fn.body.lower():
                for number, text in lines_matching(fn, _TOKEN_OP):
                    results.append(
                        TOKEN_OPERATION_WITHOUT_AUTHORITY.finding(
                            file=fn.file, line=number, snippet=text, function=fn.name
                        )
                    )

        results.extend(
            compound_risk_findings(
                findings + results, parsed, COMPOUND_BUSINESS_LOGIC_RISK
            )
        )
        return results
