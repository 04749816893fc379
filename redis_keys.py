REDIS_MEMBERS_KEY = "{prefix}:room:members:{slug}" # room id - set of connection IDs
REDIS_MEMBERSHIP_KEY = "{prefix}:conn:room:{connection_id}" # connection id - room id it belongs to
REDIS_ROOMS_KEY = "{prefix}:rooms" # set of room ids with at least one member
REDIS_SCAN_PATTERN = "{prefix}:*" # every key owned by one relay instance

# **Example layout for prefix `relay`**
# - `relay:rooms` = {"r1", "r2"}
# - `relay:room:members:r1` = {"3f1c...", "a9e0..."}
# - `relay:conn:room:3f1c...` = "r1"
