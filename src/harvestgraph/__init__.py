"""
HarvestGraph - Operational Knowledge Graph and Scoring Engine

Derives a typed property graph from the cultivation operations store and
scores it:
- Rebuilds package, task, telemetry and genetics subgraphs per site
- Schedules full and incremental snapshots in the background
- Detects anomalous inventory movements and irrigation responses
- Recommends task assignees, predicts completion and ranks blocking tasks
"""

__version__ = "0.1.0"
