"""
Capacity components: resolver, allocator and token lifecycle.

Import the concrete modules directly, e.g.
`from capacity_engine.capacity.allocator import SlotAllocator`.
"""
