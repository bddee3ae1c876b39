"""Core functionality for binding and executing ComfyUI workflows.

- **ComfygateConfig / config**: Settings loaded from ``COMFYGATE_*`` variables
- **GraphBinder**: Binds per-request inputs into a workflow template
- **ComfyClient**: HTTP client for one ComfyUI server, one per request
- **ExecutionGateway**: Submits a bound graph and frames its artifacts
- **run_workflow**: Bind + execute in one call

Architecture Overview
---------------------
1. **Configuration Layer** (config.py)
2. **Graph Layer** (graph_path.py, binder.py):
   - Key-path resolution over the node-id keyed graph
   - Uploads, clipspace mask protocol, output prefixes, seed randomization
3. **Engine Layer** (comfy_client.py):
   - Queue, history polling, uploads, artifact downloads
4. **Delivery Layer** (gateway.py, framing.py):
   - Lazily generated framed stream of every artifact
5. **Support Utilities**:
   - errors.py: Error taxonomy and engine error parsing
   - workflow_store.py: Default template in ``view_comfy.json``

Usage Example
-------------
    from comfygate.core import ComfyClient, InputDescriptor, config, run_workflow

    client = ComfyClient.from_config(config)
    result = await run_workflow(
        client,
        template,
        [InputDescriptor("6-inputs-text", "a goblin workshop")],
    )
    async for chunk in result.stream:
        ...
"""

from comfygate.core.binder import FilePayload, GraphBinder, InputDescriptor, UploadRecord
from comfygate.core.comfy_client import ArtifactDescriptor, ComfyClient
from comfygate.core.config import ComfygateConfig, config
from comfygate.core.gateway import ExecutionGateway, RunResult, run_workflow

__all__ = [
    "ArtifactDescriptor",
    "ComfyClient",
    "ComfygateConfig",
    "ExecutionGateway",
    "FilePayload",
    "GraphBinder",
    "InputDescriptor",
    "RunResult",
    "UploadRecord",
    "config",
    "run_workflow",
]
