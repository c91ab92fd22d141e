"""
Lua scripts for atomic Redis operations on remote cart rows.

Scripts return cjson-encoded strings: Lua tables with string keys do not
survive the conversion to a Redis reply.
"""
import json
from typing import Any, Dict

# Script to insert a cart row with a fresh row id
INSERT_CART_ROW_SCRIPT = """
local rows_key = KEYS[1]
local seq_key = KEYS[2]
local user_id = ARGV[1]
local product_id = ARGV[2]
local quantity = tonumber(ARGV[3])
local max_rows = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

if quantity == nil or quantity < 1 then
    return cjson.encode({err = 'INVALID_QUANTITY'})
end

-- Validate max rows per cart
local row_count = redis.call('HLEN', rows_key)
if row_count >= max_rows then
    return cjson.encode({err = 'MAX_ITEMS_EXCEEDED', max = max_rows, current = row_count})
end

local row_id = user_id .. ':' .. tostring(redis.call('INCR', seq_key))
local row = {id = row_id, product_id = product_id, quantity = quantity}

redis.call('HSET', rows_key, row_id, cjson.encode(row))
redis.call('EXPIRE', rows_key, ttl)

return cjson.encode({ok = true, row = row})
"""

# Script to update the quantity of an existing row
UPDATE_ROW_QUANTITY_SCRIPT = """
local rows_key = KEYS[1]
local row_id = ARGV[1]
local quantity = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

if quantity == nil or quantity < 1 then
    return cjson.encode({err = 'INVALID_QUANTITY'})
end

local existing = redis.call('HGET', rows_key, row_id)
if not existing then
    return cjson.encode({err = 'ROW_NOT_FOUND'})
end

local row = cjson.decode(existing)
row['quantity'] = quantity
redis.call('HSET', rows_key, row_id, cjson.encode(row))
redis.call('EXPIRE', rows_key, ttl)

return cjson.encode({ok = true, row = row})
"""


class AtomicScripts:
    """Runs the cart row scripts through the RedisClient wrapper"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        This ensures we use the wrapper's retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    @staticmethod
    def _decode(raw: Any) -> Dict:
        if raw is None:
            return {"err": "EMPTY_REPLY"}
        try:
            result = json.loads(raw)
        except (TypeError, ValueError):
            return {"err": "MALFORMED_REPLY", "raw": str(raw)}
        return result if isinstance(result, dict) else {"err": "MALFORMED_REPLY", "raw": str(raw)}

    async def insert_cart_row(
        self,
        rows_key: str,
        seq_key: str,
        user_id: str,
        product_id: str,
        quantity: int,
        max_rows: int,
        ttl: int
    ) -> Dict:
        """Execute insert row script"""
        raw = await self.redis_wrapper.eval(
            INSERT_CART_ROW_SCRIPT,
            2,
            rows_key,
            seq_key,
            user_id,
            product_id,
            str(quantity),
            str(max_rows),
            str(ttl)
        )
        return self._decode(raw)

    async def update_row_quantity(
        self,
        rows_key: str,
        row_id: str,
        quantity: int,
        ttl: int
    ) -> Dict:
        """Execute update quantity script"""
        raw = await self.redis_wrapper.eval(
            UPDATE_ROW_QUANTITY_SCRIPT,
            1,
            rows_key,
            row_id,
            str(quantity),
            str(ttl)
        )
        return self._decode(raw)
