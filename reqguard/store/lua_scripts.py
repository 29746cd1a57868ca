

# Prune, count and conditionally insert in one round trip.
# KEYS[1] = record key
# ARGV = window_start_ms, limit, now_ms, member, expire_seconds
# Returns {count_before_insert, oldest_score_or_-1, admitted}
LUA_SLIDING_WINDOW = """
local key = KEYS[1]
local window_start = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])
local member = ARGV[4]
local expire_s = tonumber(ARGV[5])

-- drop markers strictly older than the window start
redis.call("ZREMRANGEBYSCORE", key, "-inf", "(" .. window_start)

local current = tonumber(redis.call("ZCARD", key))

if current >= limit then
  local oldest_score = -1
  local oldest = redis.call("ZRANGE", key, 0, 0, "WITHSCORES")
  if oldest and #oldest >= 2 then
    oldest_score = tonumber(oldest[2])
  end
  return {current, oldest_score, 0}
end

redis.call("ZADD", key, now_ms, member)
-- idle identifiers clean themselves up
redis.call("EXPIRE", key, expire_s)

return {current, -1, 1}
"""


# Delete only when the stored value still matches (lock tokens, reservations).
LUA_DELETE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
else
  return 0
end
"""


# Overwrite only when the stored value still matches, with a fresh ttl.
# ARGV = expected, new_value, ttl_seconds
LUA_REPLACE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  redis.call("SET", KEYS[1], ARGV[2], "EX", ARGV[3])
  return 1
else
  return 0
end
"""
