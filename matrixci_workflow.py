# matrixci_workflow.py
# Build-and-test matrix for a cargo workspace: Linux with a redis service,
# macOS/Windows without it (redis-backed crates excluded), and doc tests on nightly.
from __future__ import annotations

from matrixci.dsl import health, matrix, phase, pipeline, platform, service, wf
from matrixci.model import Toolchain
from matrixci.phases import default_phases

LINUX = platform("Linux", "x86_64-unknown-linux-gnu", os="linux")
MACOS = platform("macOS", "x86_64-apple-darwin", os="macos")
WINDOWS = platform("Windows", "x86_64-pc-windows-msvc", os="windows")

MSRV = "1.57"

REDIS_CRATES = ["actix-redis", "actix-session", "actix-limitation"]

RUST = Toolchain(
    name="rust",
    install="rustup toolchain install {version}-{triple} --profile minimal",
    probe="rustc +{version}-{triple} --version",
    setup=(
        "cargo +{version}-{triple} install cargo-hack --locked",
        "cargo +{version}-{triple} generate-lockfile",
    ),
    env={
        "RUSTUP_TOOLCHAIN": "{version}-{triple}",
        "CARGO_TARGET_DIR": "{workdir}/target",
    },
)

REDIS = service(
    "redis",
    "redis:6",
    port=6379,
    entrypoint="redis-server",
    health_check=health("redis-cli ping", interval=10, timeout=5, retries=5),
)


def workflow():
    return wf(
        pipeline(
            "build_and_test_linux",
            matrix(platform=[LINUX], version=[MSRV, "stable"]),
            services=[REDIS],
            toolchain=RUST,
        ),
        pipeline(
            "build_and_test_other",
            matrix(platform=[MACOS, WINDOWS], version=[MSRV, "stable"])
            .override({}, exclusions=REDIS_CRATES),
            toolchain=RUST,
        ),
        pipeline(
            "doc_tests",
            matrix(platform=[LINUX], version=["nightly"]),
            phase("doc-test", "cargo", "ci-doctest", "--", "--nocapture", timeout=40 * 60),
            toolchain=RUST,
        ),
    )


def post_merge():
    """Nightly runs of the full pipeline, for use as PIPELINES in a post-merge workflow."""
    return wf(
        pipeline(
            "build_and_test_linux_nightly",
            matrix(platform=[LINUX], version=["nightly"]),
            services=[service("redis", "redis:5.0.7", port=6379, entrypoint="redis-server")],
            toolchain=RUST,
        ),
        pipeline(
            "build_and_test_other_nightly",
            matrix(platform=[MACOS, WINDOWS], version=["nightly"])
            .override({}, args=["ci-test", "--", "--nocapture"], exclusions=REDIS_CRATES),
            *default_phases(),
            toolchain=RUST,
        ),
    )
