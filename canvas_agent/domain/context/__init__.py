# Context engineering for the agent loop

# +---------------------+      +---------------------+
# |   Tool lifecycle    |      |   Echo prevention   |
# |---------------------|      |---------------------|
# | recent -> archived  |      | failure signatures  |
# |   -> evicted        |      | one-time directives |
# +---------------------+      +---------------------+
#            \                        /
#             \                      /
#              v                    v
# +------------------------------------------+
# |            Context budget                |   (fixed token ceiling)
# |------------------------------------------|
# | system prompt | tools | domain state     |
# | task | corrections | working set         |
# | skills | history | free                  |
# |   full -> summary -> minimal -> count    |
# +------------------------------------------+
#         |
#         v
#   [prompt for one THINK phase]
