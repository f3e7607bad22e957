"""Redis Lua script for the distributed token bucket.

The read-refill-spend-write cycle runs as one script so concurrent callers in
different processes can never spend more than ``capacity`` tokens per window.
"""

# KEYS[1]  -> bucket hash {tokens, ts}
# ARGV[1]  -> capacity
# ARGV[2]  -> refill amount
# ARGV[3]  -> refill interval (ms)
# ARGV[4]  -> cost (0 peeks without writing)
# ARGV[5]  -> now (ms); negative means read the store clock with TIME
# ARGV[6]  -> ttl (ms)
# ARGV[7]  -> mode: fixed_window | continuous
#
# Returns {allowed, remaining, reset_at_ms, retry_after_ms, now_ms}
TOKEN_BUCKET_SCRIPT = """
    local key = KEYS[1]
    local capacity = tonumber(ARGV[1])
    local refill_amount = tonumber(ARGV[2])
    local interval_ms = tonumber(ARGV[3])
    local cost = tonumber(ARGV[4])
    local now_ms = tonumber(ARGV[5])
    local ttl_ms = tonumber(ARGV[6])
    local mode = ARGV[7]

    -- Use the store clock so every process agrees on window boundaries
    if now_ms == nil or now_ms < 0 then
        local t = redis.call('TIME')
        now_ms = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
    end

    local state = redis.call('HMGET', key, 'tokens', 'ts')
    local tokens = tonumber(state[1])
    local ts = tonumber(state[2])
    if tokens == nil or ts == nil then
        tokens = capacity
        ts = now_ms
    end
    tokens = math.min(tokens, capacity)

    local elapsed = math.max(0, now_ms - ts)
    if mode == 'fixed_window' then
        if elapsed >= interval_ms then
            ts = ts + math.floor(elapsed / interval_ms) * interval_ms
            tokens = capacity
        end
    elseif elapsed > 0 then
        tokens = math.min(capacity, tokens + (elapsed * refill_amount / interval_ms))
        ts = now_ms
    end

    local need = math.max(cost, 1)
    local allowed = 0
    if tokens >= need then
        allowed = 1
        if cost > 0 then
            tokens = tokens - cost
            redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(ts))
            redis.call('PEXPIRE', key, ttl_ms)
        end
    end

    local reset_at_ms
    if mode == 'fixed_window' then
        reset_at_ms = ts + interval_ms
    else
        reset_at_ms = now_ms + math.ceil((capacity - tokens) * interval_ms / refill_amount)
    end

    local retry_after_ms = 0
    if allowed == 0 then
        if mode == 'fixed_window' then
            retry_after_ms = math.max(0, reset_at_ms - now_ms)
        else
            retry_after_ms = math.ceil((need - tokens) * interval_ms / refill_amount)
        end
    end

    local remaining = math.max(0, math.min(capacity, math.floor(tokens)))
    return {allowed, remaining, reset_at_ms, retry_after_ms, now_ms}
"""
