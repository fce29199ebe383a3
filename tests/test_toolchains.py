from __future__ import annotations

import pytest

from poly_code_runner import ExecutionHandler, ExecutionOrchestrator, RunnerSettings
from poly_code_runner.execution import Language
from poly_code_runner.execution import toolchains
from poly_code_runner.execution.toolchains import probe_toolchains, toolchain_status

HELLO_WORLD = {
    Language.JAVASCRIPT: 'console.log("hello")',
    Language.TYPESCRIPT: 'const greeting: string = "hello";\nconsole.log(greeting);',
    Language.PYTHON: 'print("hello")',
    Language.JAVA: (
        "public class Hello {\n"
        '    public static void main(String[] args) { System.out.println("hello"); }\n'
        "}\n"
    ),
    Language.CPP: '#include <iostream>\nint main() { std::cout << "hello" << std::endl; }\n',
    Language.RUBY: 'puts "hello"',
    Language.PHP: '<?php echo "hello\\n";',
    Language.SWIFT: 'print("hello")',
    Language.GO: 'package main\n\nimport "fmt"\n\nfunc main() { fmt.Println("hello") }\n',
    Language.RUST: 'fn main() { println!("hello"); }\n',
}


def test_probe_reports_every_language(
    settings: RunnerSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        toolchains.shutil, "which", lambda name: None if name == "java" else f"/usr/bin/{name}"
    )
    statuses = {status.language: status for status in probe_toolchains(settings)}
    assert len(statuses) == 11
    assert statuses[Language.RUBY].available is True
    assert statuses[Language.RUBY].path == "/usr/bin/ruby"
    # javac alone cannot run a class.
    assert statuses[Language.JAVA].available is False
    assert statuses[Language.JAVA].to_dict()["commands"] == ["javac", "java"]


@pytest.mark.toolchain
@pytest.mark.parametrize("language", list(HELLO_WORLD), ids=lambda lang: lang.value)
def test_hello_world(settings: RunnerSettings, language: Language) -> None:
    if not toolchain_status(language, settings).available:
        pytest.skip(f"{language.value} toolchain not installed")
    handler = ExecutionHandler(ExecutionOrchestrator(settings), settings)
    resp = handler.handle({"code": HELLO_WORLD[language], "language": language.value, "timeout": 30000})
    assert resp.status_code == 200, resp.body
    assert resp.body["output"].strip() == "hello"
