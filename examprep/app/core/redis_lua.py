"""Redis Lua scripts for atomic rate limiting.

These scripts run the whole read-prune-append-write sequence on the server
so concurrent checks against the same identifier cannot both take the last
slot in a window.
"""

# Sliding window over a sorted set scored by request timestamp (ms).
# Entries with score <= now - window are pruned on every call.
# Returns {allowed, count_after_call, oldest_retained_timestamp}
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local max_requests = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])
    local member = ARGV[5]

    -- Drop everything that fell out of the window
    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local count = redis.call('ZCARD', key)
    if count >= max_requests then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local oldest_ts = now
        if oldest[2] then
            oldest_ts = tonumber(oldest[2])
        end
        return {0, count, oldest_ts}
    end

    redis.call('ZADD', key, now, member)
    redis.call('EXPIRE', key, ttl)

    local first = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {1, count + 1, tonumber(first[2])}
"""
