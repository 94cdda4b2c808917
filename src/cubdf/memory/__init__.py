"""Device buffer ownership for solver instances."""

from cubdf.memory.buffers import BufferRequest, SolverBuffers

__all__ = ["BufferRequest", "SolverBuffers"]
