"""
MIT License

Copyright (c) 2025 Pan Yu

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Author: Pan Yu
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# map_x, map_y, valid
ProjectionMaps = Tuple[np.ndarray, np.ndarray, np.ndarray]


def _maps_nbytes(maps: ProjectionMaps) -> int:
  return sum(array.nbytes for array in maps)


class CacheManager:
  """
  Thread-safe LRU cache for reprojection coordinate maps.

  Every image of a batch shares the same input and output geometry, so the
  maps are generated once and reused by all pipeline workers. When a memory
  limit is set, least recently used entries are evicted to make room.
  """

  def __init__(self, max_memory_mb: Optional[float] = None):
    """
    Parameters:
    - max_memory_mb: Optional maximum memory usage in MB. If None, no limit is enforced.
    """
    self._cache: 'OrderedDict[str, Tuple[ProjectionMaps, float]]' = OrderedDict()
    self._max_memory_mb = max_memory_mb
    self._lock = threading.RLock()
    self._hit_count = 0
    self._miss_count = 0
    self._eviction_count = 0

  def get(self, cache_key: str) -> Optional[ProjectionMaps]:
    """
    Retrieve cached maps and mark them as most recently used.

    Returns:
    - (map_x, map_y, valid) if found, None otherwise
    """
    with self._lock:
      entry = self._cache.get(cache_key)
      if entry is None:
        self._miss_count += 1
        return None

      self._hit_count += 1
      maps, _ = entry
      self._cache[cache_key] = (maps, time.time())
      self._cache.move_to_end(cache_key)
      return maps

  def put(self, cache_key: str, maps: ProjectionMaps) -> bool:
    """
    Store maps, evicting least recently used entries when over the memory limit.

    The arrays are marked read-only since they are shared between threads.

    Returns:
    - True if the maps were cached, False if they do not fit even in an empty cache
    """
    for array in maps:
      array.setflags(write=False)

    with self._lock:
      new_memory_mb = _maps_nbytes(maps) / (1024 * 1024)

      if cache_key in self._cache:
        self._cache[cache_key] = (maps, time.time())
        self._cache.move_to_end(cache_key)
        return True

      if self._max_memory_mb is not None:
        if new_memory_mb > self._max_memory_mb:
          logger.warning("Cannot cache %s: %.1f MB exceeds the %.1f MB limit",
                         cache_key, new_memory_mb, self._max_memory_mb)
          return False

        current_memory = self._calculate_total_memory_mb()
        while current_memory + new_memory_mb > self._max_memory_mb and self._cache:
          lru_key, (lru_maps, _) = self._cache.popitem(last=False)
          freed_memory = _maps_nbytes(lru_maps) / (1024 * 1024)
          current_memory -= freed_memory
          self._eviction_count += 1
          logger.debug("LRU evicted: %s (freed %.1f MB)", lru_key, freed_memory)

      self._cache[cache_key] = (maps, time.time())
      return True

  def get_info(self) -> Dict[str, Any]:
    """
    Get cache statistics.

    Returns:
    - Dictionary with entry count, memory usage, limit, hits, misses and evictions
    """
    with self._lock:
      total_memory_bytes = sum(_maps_nbytes(maps) for maps, _ in self._cache.values())
      return {
        'cached_projections': len(self._cache),
        'memory_usage_bytes': total_memory_bytes,
        'memory_usage_mb': total_memory_bytes / (1024 * 1024),
        'max_memory_mb': self._max_memory_mb,
        'memory_limit_enabled': self._max_memory_mb is not None,
        'hits': self._hit_count,
        'misses': self._miss_count,
        'evictions': self._eviction_count,
      }

  def log_status(self) -> None:
    """Log current cache status in a human-readable format."""
    info = self.get_info()
    logger.info("Map cache: %d projections, %.1f MB, %d hits, %d misses, %d evictions",
                info['cached_projections'], info['memory_usage_mb'],
                info['hits'], info['misses'], info['evictions'])

  def _calculate_total_memory_mb(self) -> float:
    total_bytes = sum(_maps_nbytes(maps) for maps, _ in self._cache.values())
    return total_bytes / (1024 * 1024)
