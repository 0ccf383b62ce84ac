"""
PDF Workbench Backend - REST API for one-shot document operations

This package provides a FastAPI-based web service that runs document
operations (merge, split, compression, conversions, stamping) through
external processing engines and returns a time-limited download link. It
enables:

- Safe staging of uploaded input into a sandboxed working directory
- Uniquely named, tracked output artifacts
- Automatic reclamation of every artifact once its TTL expires
- Size-targeted compression over a quality ladder
- Bundling of multi-file results into one zip download

Key Components:
    - main: FastAPI composition root and HTTP endpoint definitions
    - registry: Thread-safe artifact path -> creation time bookkeeping
    - sweeper: Background thread evicting expired artifacts
    - workspace: Upload staging, output reservation, scratch directories
    - bundling: Zip packaging of multi-file results
    - compression: Quality-ladder search for a target output size
    - operations: Per-operation handlers over the workspace core
    - engines: External engine invocation and argument builders
    - configuration: Config loading, env overrides and logging setup

Usage:
    Run the API server with:
        uvicorn pdf_workbench_backend.main:app --host 0.0.0.0 --port 8080

    Or use the development script:
        uv run uvicorn pdf_workbench_backend.main:app --reload

Architecture Principles:
    - Every file written to the workspace is registered before it is exposed
    - Engines are opaque; the core only reserves paths and checks results
    - Registry state is injected from the composition root, never global
    - Generated names are unique by random token, not by request order
"""
