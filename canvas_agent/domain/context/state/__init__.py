# State = everything needed to resume a run at an iteration boundary.

# The run record: iteration counter, status, errors, history and plan

# Budget usage and the chunks admitted into each category

# Tool result records at their current lifecycle stage

# Tracked failure signatures and their corrections

# The awareness snapshot, its stale flag and the domain version
