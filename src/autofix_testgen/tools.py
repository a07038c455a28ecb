"""LangChain tools for reviewing and applying proposed fixes by hand.

Tools are built around one ``FixAgent`` so they share its stores; this is how
a caller applies fixes that a manual-mode run only proposed.
"""

from __future__ import annotations

import json
import logging

from langchain_core.tools import BaseTool, tool

from .autofix import FixAgent
from .models import FixTarget
from .parsers import parse_code_metadata

logger = logging.getLogger(__name__)


def build_fix_tools(agent: FixAgent) -> list[BaseTool]:
    """Return ``analyze_code``, ``analyze_bug``, ``apply_fix`` and ``retest_after_fix`` bound to ``agent``."""

    @tool("analyze_code")
    def analyze_code(file_path: str) -> str:
        """Extract functions, parameters and imports from a Java, TypeScript or JavaScript file.

        Args:
            file_path: Path of a registered or on-disk source file.

        Returns:
            JSON string of the file's ``CodeMetadata``.

        Raises:
            UnsupportedFileTypeError: For other extensions.
            FileNotFoundError: If the file is neither registered nor on disk.
        """
        metadata = parse_code_metadata(file_path, agent.sources.read(file_path))
        return metadata.model_dump_json(indent=2)

    @tool("analyze_bug")
    def analyze_bug(test_case_id: str) -> str:
        """Describe the latest failing result of a test case: target, error and trace.

        Args:
            test_case_id: Id of the test case whose latest result should be inspected.

        Returns:
            JSON context for the failure, or a not-found message.
        """
        test_case = agent.test_cases.get_test_case(test_case_id)
        if test_case is None:
            return "Test case not found"
        result = agent.test_cases.get_test_result(test_case_id)
        if result is None:
            return "Test result not found"
        return json.dumps(
            {
                "testCase": test_case.name,
                "targetFunction": test_case.target_function,
                "filePath": test_case.file_path,
                "passed": result.passed,
                "error": result.error,
                "stackTrace": result.stack_trace,
                "fixes": [fix.id for fix in agent.bug_fixes.fixes_for_test(test_case_id)],
            },
            indent=2,
        )

    @tool("apply_fix")
    def apply_fix(bug_fix_id: str, confirm: bool) -> str:
        """Apply a proposed fix to the test case or the source file.

        Args:
            bug_fix_id: Id of the proposed fix.
            confirm: Must be true; nothing is written otherwise.
        """
        if not confirm:
            return "Fix application cancelled - confirmation required"
        if agent.bug_fixes.get_bug_fix(bug_fix_id) is None:
            return "Bug fix not found"
        fix = agent.apply_fix(bug_fix_id)
        destination = "test case " + fix.test_case_id if fix.target == FixTarget.TEST else fix.file_path
        return f"Applied bug fix {bug_fix_id} to {destination}"

    @tool("retest_after_fix")
    def retest_after_fix(bug_fix_id: str) -> str:
        """Re-run the test behind a fix and record whether the fix holds.

        Args:
            bug_fix_id: Id of an applied fix.
        """
        if agent.bug_fixes.get_bug_fix(bug_fix_id) is None:
            return "Bug fix not found"
        result = agent.retest(bug_fix_id)
        logger.info("Retest for fix %s: %s", bug_fix_id, "passed" if result.passed else "failed")
        return f"Retest {'PASSED' if result.passed else 'FAILED'}: {result.error or 'All tests passed'}"

    return [analyze_code, analyze_bug, apply_fix, retest_after_fix]
