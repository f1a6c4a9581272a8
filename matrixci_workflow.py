# matrixci_workflow.py
# Build pipeline: style checks gate a Linux matrix build and an aarch64
# build on a leased remote machine. Try: matrixci plan
from __future__ import annotations

from matrixci.dsl import cache_step, job, matrix, scope, sh, wf
from matrixci.leases import CommandProvider


def build_paths(name: str) -> str:
    # one directory per job instance; matrix instances run side by side
    return f"""
rel_build_path="workspace/{name}/build"
rel_src_path="workspace/src"
rel_ccache_path="workspace/{name}/ccache"
mkdir -p "$rel_build_path" "$rel_src_path" "$rel_ccache_path"
echo ::set-output name=SOURCE::$(realpath "$rel_src_path")
echo ::set-output name=BINARY::$(realpath "$rel_build_path")
echo ::set-output name=CCACHE::$(realpath "$rel_ccache_path")
"""


CONFIGURE = (
    'cmake -G "Unix Makefiles" '
    '-DCMAKE_BUILD_TYPE:STRING="${{ matrix.build_type }}" '
    "-DOSQUERY_BUILD_TESTS=${{ steps.tests.outputs.VALUE }} "
    "-DOSQUERY_NO_DEBUG_SYMBOLS=${{ steps.debug_symbols.outputs.VALUE }} "
    '"${{ steps.build_paths.outputs.SOURCE }}"'
)


def build_steps(os_name: str):
    return [
        sh("Select the build job count", "echo ::set-output name=VALUE::$(($(nproc) + 1))", id="job_count"),
        sh(
            "Select the build options for the tests",
            'if [ "${{ matrix.build_type }}" = "RelWithDebInfo" ]; then echo VALUE=OFF; else echo VALUE=ON; fi '
            '>> "$MATRIXCI_OUTPUT"',
            id="tests",
        ),
        sh(
            "Select the debug symbols options",
            'if [ "${{ matrix.build_type }}" = "Debug" ]; then echo VALUE=ON; else echo VALUE=OFF; fi '
            '>> "$MATRIXCI_OUTPUT"',
            id="debug_symbols",
        ),
        sh(
            "Create a non-root user",
            "id -u unprivileged_user >/dev/null 2>&1 || useradd -m -s /bin/bash unprivileged_user",
            condition="matrix.build_type != 'RelWithDebInfo'",
        ),
        sh("Setup the build paths", build_paths(f"{os_name}_${{{{ matrix.build_type }}}}"), id="build_paths"),
        cache_step(
            "Update the cache (ccache)",
            key=f"ccache_{os_name}_${{{{ matrix.build_type }}}}_${{{{ run.sha }}}}",
            restore_keys=f"ccache_{os_name}_${{{{ matrix.build_type }}}}",
            path="${{ steps.build_paths.outputs.CCACHE }}",
        ),
        cache_step(
            "Update the cache (git submodules)",
            key=f"gitmodules_{os_name}_${{{{ run.sha }}}}",
            restore_keys=f"gitmodules_{os_name}",
            path=".git/modules",
        ),
        sh("Update the git submodules", "git submodule sync --recursive"),
        sh(
            "Configure the project",
            CONFIGURE,
            cwd="${{ steps.build_paths.outputs.BINARY }}",
            env={"CCACHE_DIR": "${{ steps.build_paths.outputs.CCACHE }}"},
        ),
        sh(
            "Build the project",
            "cmake --build . -j ${{ steps.job_count.outputs.VALUE }}",
            cwd="${{ steps.build_paths.outputs.BINARY }}",
        ),
    ]


def workflow():
    aarch64 = scope(
        "aarch64-runner",
        CommandProvider(
            start="./tools/ci/ec2_runner.sh start",
            stop="./tools/ci/ec2_runner.sh stop",
            timeout=900,
        ),
        instance_type="r6g.4xlarge",
    )

    return wf(
        job(
            "check_code_style",
            sh("Check the copyright headers", "./tools/ci/scripts/check_copyright_headers.py"),
            sh("Setup the build paths", build_paths("check_code_style"), id="build_paths"),
            sh(
                "Configure the project",
                'cmake -G "Unix Makefiles" -DOSQUERY_ENABLE_FORMAT_ONLY=ON "${{ steps.build_paths.outputs.SOURCE }}"',
                cwd="${{ steps.build_paths.outputs.BINARY }}",
            ),
            sh(
                "Check code formatting",
                "cmake --build . --target format_check",
                cwd="${{ steps.build_paths.outputs.BINARY }}",
            ),
            requires=["linux"],
        ),

        job(
            "check_source_code",
            sh("Setup the build paths", build_paths("cppcheck_${{ matrix.os }}"), id="build_paths"),
            sh(
                "Run cppcheck",
                "cmake --build . --target cppcheck 2>&1 | tee cppcheck.txt",
                cwd="${{ steps.build_paths.outputs.BINARY }}",
            ),
            needs=["check_code_style"],
            matrix=matrix(os=["ubuntu-18.04"]),
            requires=["${{ matrix.os }}"],
        ),

        job(
            "build_linux",
            *build_steps("ubuntu-18.04"),
            needs=["check_code_style"],
            matrix=matrix(build_type=["Release", "RelWithDebInfo", "Debug"], os=["ubuntu-18.04"]),
            requires=["${{ matrix.os }}"],
            paths=["osquery/**", "libraries/**", "cmake/**", "CMakeLists.txt", "matrixci_workflow.py"],
        ),

        job(
            "build_linux_aarch64",
            *build_steps("linux_aarch64"),
            needs=["check_code_style"],
            matrix=matrix(build_type=["RelWithDebInfo"]),
            lease="aarch64-runner",
            outputs={"runner": "${{ lease.handle }}"},
        ),

        scopes=[aarch64],
        targets={
            "ubuntu-18.04": ("linux", "ubuntu-18.04", "x86_64"),
        },
    )
