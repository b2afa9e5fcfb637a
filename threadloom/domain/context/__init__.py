# This module handles Context engineering

# +---------------------+
# |      History        |   (Every message of the thread)
# |---------------------|
# | User turns          |
# | Tool calls/results  |
# | Prior summaries     |
# +---------------------+

# +---------------------+
# |      State          |   (Current, serialized, checkpointed)
# |---------------------|
# | Step number         |
# | Pending interrupt   |
# | Todos / files       |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (What fits in the window)
# |------------------------------|
# | System messages              |
# | Summary (rollup / tiered /   |
# |   structured)                |
# | Pinned + recent tool results |
# | Recent tail                  |
# +------------------------------+
#         |
#         v
#   [LLM / tool call]

from .token_counter import TokenCounter, ApproximateTokenCounter, TokenBudget
from .context_manager import ContextManager
from .compaction_scheduler import CompactionScheduler, CompactionTask, CompactionTaskStatus
from .prompts import StructuredSummary, parse_structured_summary, is_summary_message
