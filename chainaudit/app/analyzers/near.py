"""
NEAR Protocol contract analyzer.

Rules focus on the asynchronous execution model: callbacks, promise
results, cross-contract calls and state committed before them, plus
storage staking and caller authorization.
"""

from __future__ import annotations

import re
from typing import List

from chainaudit.app.analyzers.rust_common import (
    RuleSpec,
    RustNetworkAnalyzer,
    compound_risk_findings,
    lines_matching,
    unchecked_arithmetic,
)
from chainaudit.app.schemas.analysis import FunctionInfo, ParseResult
from chainaudit.app.schemas.findings import Finding, FindingSource, Severity


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------

PUBLIC_CALLBACK = RuleSpec(
    rule_id="NEAR-001",
    title="Callback Not Marked Private",
    description=(
        "A callback method is callable by any account because it lacks "
        "the `#[private]` attribute."
    ),
    severity=Severity.HIGH,
    confidence=0.85,
    exploitability=0.8,
    category="callback_security",
    recommendation="Annotate callbacks with `#[private]`.",
    cwe="CWE-284",
    impact="Attackers can fake promise results and corrupt contract state.",
)

UNCHECKED_PROMISE_RESULT = RuleSpec(
    rule_id="NEAR-002",
    title="Unchecked Promise Result",
    description="A promise result is read without handling the failed case.",
    severity=Severity.HIGH,
    confidence=0.8,
    exploitability=0.6,
    category="callback_security",
    recommendation="Match on `PromiseResult::Successful` and roll back on failure.",
    cwe="CWE-252",
)

UNPAID_STORAGE = RuleSpec(
    rule_id="NEAR-003",
    title="Storage Growth Without Deposit Check",
    description=(
        "A public method grows persistent collections without checking "
        "the attached deposit covers storage staking."
    ),
    severity=Severity.MEDIUM,
    confidence=0.7,
    exploitability=0.5,
    category="storage_management",
    recommendation="Measure `env::storage_usage()` and require a matching deposit.",
    cwe="CWE-400",
)

MISSING_ACCESS_CONTROL = RuleSpec(
    rule_id="NEAR-004",
    title="Missing Caller Authorization",
    description=(
        "A state-changing method with a privileged name never checks "
        "`env::predecessor_account_id()` against an owner."
    ),
    severity=Severity.HIGH,
    confidence=0.85,
    exploitability=0.8,
    category="access_control",
    recommendation="Assert the predecessor is the owner before mutating state.",
    cwe="CWE-862",
)

CALL_WITHOUT_CALLBACK = RuleSpec(
    rule_id="NEAR-005",
    title="Cross-Contract Call Without Callback",
    description="A cross-contract call is issued without a `.then(...)` callback.",
    severity=Severity.MEDIUM,
    confidence=0.75,
    exploitability=0.5,
    category="cross_contract_calls",
    recommendation="Attach a private callback that verifies the outcome.",
    cwe="CWE-754",
)

UNCHECKED_ARITHMETIC = RuleSpec(
    rule_id="NEAR-006",
    title="Unchecked Arithmetic",
    description="Balance arithmetic is performed without overflow or underflow checks.",
    severity=Severity.HIGH,
    confidence=0.7,
    exploitability=0.5,
    category="arithmetic_safety",
    recommendation="Use `checked_*` arithmetic or enable `overflow-checks` in release.",
    cwe="CWE-190",
)

PANIC_IN_PUBLIC_METHOD = RuleSpec(
    rule_id="NEAR-007",
    title="Panic-Prone Unwrap",
    description="`unwrap()` or `expect()` in a public method aborts with an opaque error.",
    severity=Severity.LOW,
    confidence=0.6,
    exploitability=0.2,
    category="error_handling",
    recommendation="Return descriptive errors with `require!` or `env::panic_str`.",
    cwe="CWE-248",
)

STATE_BEFORE_ASYNC_CALL = RuleSpec(
    rule_id="NEAR-101",
    title="State Committed Before Cross-Contract Call",
    description=(
        "State is changed before an asynchronous call and no callback "
        "restores it if the call fails."
    ),
    severity=Severity.HIGH,
    confidence=0.7,
    exploitability=0.6,
    category="state_management",
    recommendation="Roll back state in a `#[private]` callback when the call fails.",
    cwe="CWE-841",
    source=FindingSource.SEMANTIC,
)

COMPOUND_BUSINESS_LOGIC_RISK = RuleSpec(
    rule_id="NEAR-102",
    title="Compound Business Logic Risk",
    description=(
        "The same method combines an access-control gap with value-moving "
        "or cross-contract logic."
    ),
    severity=Severity.MEDIUM,
    confidence=0.7,
    exploitability=0.7,
    category="business_logic",
    recommendation="Review the method end to end and gate value movement on authorization.",
    cwe="CWE-840",
    source=FindingSource.SEMANTIC,
)


# ----------------------------------------------------------------------
# Patterns
# ----------------------------------------------------------------------

_CALLBACK_NAME = re.compile(r"^(on_\w+|callback_\w+|resolve_\w+|\w+_callback)$")
_CALLBACK_MARKER = re.compile(r"#\[callback|env::promise_result\s*\(")
_PROMISE_RESULT = re.compile(r"env::promise_result\s*\(")
_PROMISE_HANDLED = re.compile(r"PromiseResult::(Successful|Failed)|#\[callback_result\]")
_STORAGE_GROWTH = re.compile(r"\.(insert|push|extend)\s*\(")
_DEPOSIT_CHECK = re.compile(
    r"attached_deposit|storage_usage|assert_one_yocto|storage_deposit"
)
_PRIVILEGED_NAME = re.compile(
    r"^(set_|update_|add_|remove_|change_|withdraw|mint|burn|pause|unpause|upgrade|migrate)"
)
_CALLER_CHECK = re.compile(
    r"predecessor_account_id|signer_account_id|assert_owner|only_owner|assert_self"
)
_CROSS_CONTRACT = re.compile(r"Promise::new\s*\(|\bext_\w+|\.function_call\s*\(")
_THEN = re.compile(r"\.then\s*\(")
_UNWRAP = re.compile(r"\.unwrap\s*\(\s*\)|\.expect\s*\(")
_STATE_MUTATION = re.compile(
    r"self\.\w+\s*(=[^=]|\+=|-=)|self\.\w+\.(insert|remove|push|set)\s*\("
)


def _is_view(fn: FunctionInfo) -> bool:
    return "&mut self" not in fn.signature


class NearAnalyzer(RustNetworkAnalyzer):
    network = "near"

    glossary = {
        "Promise": "Handle to an asynchronous cross-contract call.",
        "Callback": "Method invoked with the result of a previous promise.",
        "Predecessor": "The account that made the current call.",
        "Storage Staking": "NEAR locked to pay for the bytes a contract stores.",
        "yoctoNEAR": "The smallest NEAR denomination (10^-24 NEAR).",
    }

    framework_markers = {
        "near-sdk": "near-sdk",
        "near-contract-standards": "near-contract-standards",
    }

    feature_markers = {
        r"#\[near_bindgen\]|#\[near\b": "near_bindgen",
        r"Promise::new|\bext_\w+": "cross_contract_calls",
        r"#\[payable\]": "payable_methods",
        r"LookupMap|UnorderedMap|IterableMap|Vector\s*<": "persistent_collections",
    }

    # ------------------------------------------------------------------
    # Static rules
    # ------------------------------------------------------------------

    def _static_findings(self, parsed: ParseResult) -> List[Finding]:
        findings: List[Finding] = []

        for fn in parsed.functions():
            findings.extend(self._function_findings(fn))

        return findings

    def _function_findings(self, fn: FunctionInfo) -> List[Finding]:
        findings: List[Finding] = []
        attributes = " ".join(fn.attributes)

        def at_signature(rule: RuleSpec) -> Finding:
            return rule.finding(
                file=fn.file,
                line=fn.line,
                end_line=fn.end_line,
                snippet=fn.signature,
                function=fn.name,
            )

        # NEAR-001
        if (
            fn.is_public
            and "#[private]" not in attributes
            and (_CALLBACK_NAME.match(fn.name) or _CALLBACK_MARKER.search(fn.body))
        ):
            findings.append(at_signature(PUBLIC_CALLBACK))

        # NEAR-002
        if not _PROMISE_HANDLED.search(fn.body):
            for number, text in lines_matching(fn, _PROMISE_RESULT):
                findings.append(
                    UNCHECKED_PROMISE_RESULT.finding(
                        file=fn.file, line=number, snippet=text, function=fn.name
                    )
                )

        if fn.is_public and not _is_view(fn):
            # NEAR-003
            if not _DEPOSIT_CHECK.search(fn.body):
                hit = next(lines_matching(fn, _STORAGE_GROWTH), None)
                if hit is not None:
                    findings.append(
                        UNPAID_STORAGE.finding(
                            file=fn.file, line=hit[0], snippet=hit[1], function=fn.name
                        )
                    )

            # NEAR-004
            if (
                _PRIVILEGED_NAME.match(fn.name)
                and "#[private]" not in attributes
                and not _CALLER_CHECK.search(fn.body)
            ):
                findings.append(at_signature(MISSING_ACCESS_CONTROL))

        # NEAR-005
        if not _THEN.search(fn.body):
            hit = next(lines_matching(fn, _CROSS_CONTRACT), None)
            if hit is not None:
                findings.append(
                    CALL_WITHOUT_CALLBACK.finding(
                        file=fn.file, line=hit[0], snippet=hit[1], function=fn.name
                    )
                )

        # NEAR-006
        findings.extend(
            unchecked_arithmetic(
                fn,
                overflow_rule=UNCHECKED_ARITHMETIC,
                underflow_rule=UNCHECKED_ARITHMETIC,
            )
        )

        # NEAR-007
        if fn.is_public:
            for number, text in lines_matching(fn, _UNWRAP):
                findings.append(
                    PANIC_IN_PUBLIC_METHOD.finding(
                        file=fn.file, line=number, snippet=text, function=fn.name
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
            if not fn.is_public or _THEN.search(fn.body):
                continue

            call = next(lines_matching(fn, _CROSS_CONTRACT), None)
            if call is None:
                continue

            mutation = next(
                (
                    hit
                    for hit in lines_matching(fn, _STATE_MUTATION)
                    if hit[0] < call[0]
                ),
                None,
            )
            if mutation is not None:
                results.append(
                    STATE_BEFORE_ASYNC_CALL.finding(
                        file=fn.file,
                        line=mutation[0],
                        snippet=mutation[1],
                        function=fn.name,
                    )
                )

        results.extend(
            compound_risk_findings(
                findings + results, parsed, COMPOUND_BUSINESS_LOGIC_RISK
            )
        )
        return results
