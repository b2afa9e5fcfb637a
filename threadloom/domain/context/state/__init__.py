# State = All information required to resume, continue, or audit a thread at a particular moment in time.

# **It's "the NOW" for the thread**, persisted as a Checkpoint:

# Step number (model invocations so far)

# Message history, possibly compacted

# Auxiliary state (todos, virtual files)

# Pending approval interrupt, if the turn was suspended

from .checkpoint_store import CheckpointStore, InMemoryCheckpointStore
from .file_checkpoint_store import FileCheckpointStore
