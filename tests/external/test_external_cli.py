from __future__ import annotations

from pathlib import Path
import shutil
import subprocess
import sys


def _tool_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _fixture_schema() -> Path:
    return _tool_root() / "tests" / "fixtures" / "webgpu_minimal.json"


def _run(args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    run_cwd = _tool_root() if cwd is None else cwd
    return subprocess.run(
        [sys.executable, str(_tool_root() / "headers_gen.py"), *args],
        cwd=run_cwd,
        capture_output=True,
        text=True,
        check=False,
    )


def _run_generate(output: Path, *extra: str) -> subprocess.CompletedProcess[str]:
    return _run(
        [
            "--schema",
            str(_fixture_schema().resolve()),
            "--output",
            str(output.resolve()),
            *extra,
        ]
    )


def test_t_01_generate_writes_header_and_summary(tmp_path: Path) -> None:
    output = tmp_path / "include" / "webgpu.h"

    result = _run_generate(output)

    assert result.returncode == 0
    assert result.stdout == ""
    assert "Header generated from webgpu_minimal.json:" in result.stderr
    text = output.read_text(encoding="utf-8")
    assert text.startswith(
        "// Generated by headers_gen from webgpu_minimal.json. Do not edit.\n"
    )
    assert "#ifndef WEBGPU_H_" in text
    assert text.endswith("#endif // WEBGPU_H_\n")


def test_t_02_fixture_declarations_are_complete(tmp_path: Path) -> None:
    output = tmp_path / "webgpu.h"

    result = _run_generate(output)

    assert result.returncode == 0
    text = output.read_text(encoding="utf-8")
    for expected in (
        "#define WGPU_WHOLE_SIZE (UINT64_MAX)",
        "#define WGPU_STRLEN (SIZE_MAX)",
        "typedef struct WGPUDeviceImpl* WGPUDevice;",
        "typedef struct WGPUBufferImpl* WGPUBuffer;",
        "typedef struct WGPUStringView WGPUStringView;",
        "typedef WGPUFlags WGPUBufferUsageFlags;",
        "    WGPUBufferUsage_CopySrc = 0x00000004,",
        "typedef uint64_t WGPUBufferSize;",
        "typedef void (*WGPUProc)(void);",
        "typedef void (*WGPUBufferMapCallback)("
        "WGPUMapAsyncStatus status, WGPUStringView message, void* userdata);",
        "    WGPUSType sType;",
        "    const char* data;",
        "    const WGPUChainedStruct* nextInChain;",
        "    WGPUBool mappedAtCreation;",
        "    WGPUChainedStruct chain;",
        "WGPU_EXPORT WGPUProc wgpuGetProcAddress(WGPUStringView procName);",
        "WGPU_EXPORT WGPUBuffer wgpuDeviceCreateBuffer("
        "WGPUDevice device, const WGPUBufferDescriptor* descriptor);",
        "WGPU_EXPORT uint64_t wgpuBufferMapAsync(WGPUBuffer buffer, size_t offset, "
        "size_t size, WGPUBufferMapCallbackInfo callbackInfo);",
        "WGPU_EXPORT WGPUBufferSize wgpuBufferGetSize(WGPUBuffer buffer);",
        "WGPU_EXPORT void wgpuBufferRelease(WGPUBuffer buffer);",
    ):
        assert expected in text, expected
    assert text.index("struct WGPUStringView {") < text.index(
        "struct WGPUBufferDescriptor {"
    )
    assert text.index("struct WGPUBufferMapCallbackInfo {") < text.index(
        "#if !defined(WGPU_SKIP_PROCS)"
    )


def test_t_03_exclude_tags_drop_tagged_declarations(tmp_path: Path) -> None:
    output = tmp_path / "webgpu.h"

    result = _run_generate(output, "--exclude-tags", "native", "--exclude-tags", "dawn")

    assert result.returncode == 0
    assert "Excluding tags: dawn, native" in result.stderr
    text = output.read_text(encoding="utf-8")
    assert "ShaderSourceGLSL" not in text
    assert "wgpuDeviceGetLabel" not in text
    assert "struct WGPUShaderSourceWGSL {" in text
    assert "WGPUSType_ShaderSourceWGSL" in text


def test_t_04_header_goes_to_stdout_without_output_flag() -> None:
    result = _run(["--schema", str(_fixture_schema().resolve())])

    assert result.returncode == 0
    assert result.stdout.startswith("// Generated by headers_gen")
    assert "#ifndef WGPU_H_" in result.stdout
    assert "Parsing:" in result.stderr


def test_t_05_repeated_runs_are_byte_identical(tmp_path: Path) -> None:
    first = tmp_path / "a" / "webgpu.h"
    second = tmp_path / "b" / "webgpu.h"

    assert _run_generate(first, "--exclude-tags", "dawn").returncode == 0
    assert _run_generate(second, "--exclude-tags", "dawn").returncode == 0

    assert first.read_bytes() == second.read_bytes()


def test_t_06_reads_dawn_json_from_working_directory(tmp_path: Path) -> None:
    shutil.copy2(_fixture_schema(), tmp_path / "dawn.json")

    result = _run([], cwd=tmp_path)

    assert result.returncode == 0
    assert "WGPUBufferDescriptor" in result.stdout


def test_t_07_missing_schema_degrades_without_traceback(tmp_path: Path) -> None:
    result = _run([], cwd=tmp_path)

    combined_output = result.stdout + result.stderr
    assert result.returncode == 1
    assert "PATH_NOT_FOUND" in combined_output
    assert "--schema" in combined_output
    assert "Traceback (most recent call last)" not in combined_output


def test_t_08_malformed_schema_exits_1_and_writes_nothing(tmp_path: Path) -> None:
    schema = tmp_path / "dawn.json"
    schema.write_text('{"device": {"category": "object"', encoding="utf-8")
    output = tmp_path / "webgpu.h"

    result = _run(["--schema", str(schema), "-o", str(output)])

    assert result.returncode == 1
    assert "Error: invalid JSON" in result.stderr
    assert "Traceback (most recent call last)" not in result.stderr
    assert not output.exists()


def test_t_09_unknown_flag_returns_argparse_usage_code() -> None:
    result = _run(["--not-a-flag"])

    assert result.returncode == 2


def test_t_10_help_lists_public_flags() -> None:
    result = _run(["--help"])

    assert result.returncode == 0
    for flag in ("--schema", "--exclude-tags", "--namespace", "--output"):
        assert flag in result.stdout


def test_t_11_non_utf8_schema_exits_1_without_traceback(tmp_path: Path) -> None:
    schema = tmp_path / "dawn.json"
    schema.write_bytes(b'{"a": {"category": "object", "tags": ["\xff"]}}')
    output = tmp_path / "webgpu.h"

    result = _run(["--schema", str(schema), "-o", str(output)])

    assert result.returncode == 1
    assert "Error: invalid UTF-8" in result.stderr
    assert "Traceback (most recent call last)" not in result.stderr
    assert not output.exists()
