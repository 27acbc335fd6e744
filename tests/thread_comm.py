"""In-process stand-in for an MPI communicator, one thread per rank.

Implements only the calls the distributed engine makes: Get_rank, Get_size,
bcast, Scatterv, Gatherv, Sendrecv, Barrier and Abort. Collectives meet at a
shared threading.Barrier; point-to-point messages go through a mailbox keyed by
(source, dest, tag).
"""
import copy
import threading

import numpy as np

PROC_NULL = -1
TIMEOUT = 60.0


class RankAborted(SystemExit):
    """Raised in the calling thread by Abort(), like the process exit it replaces."""


class ThreadGroup:
    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=TIMEOUT)
        self.slots = [None] * size
        self.mailbox = {}
        self.cond = threading.Condition()
        self.abort_code = None
        self.calls = []

    def comms(self):
        return [ThreadComm(self, rank) for rank in range(self.size)]


def _vector(spec):
    buf, counts, displs = spec[:3]
    return np.asarray(buf).reshape(-1), counts, displs


class ThreadComm:
    def __init__(self, group, rank):
        self.group = group
        self.rank = rank

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.group.size

    def _sync(self):
        self.group.barrier.wait()

    def _record(self, name):
        if self.rank == 0:
            self.group.calls.append(name)

    def bcast(self, obj, root=0):
        self._record('bcast')
        if self.rank == root:
            self.group.slots[root] = obj
        self._sync()
        value = copy.deepcopy(self.group.slots[root])
        self._sync()
        return value

    def Scatterv(self, sendbuf, recvbuf, root=0):
        self._record('Scatterv')
        if self.rank == root:
            self.group.slots[root] = _vector(sendbuf)
        self._sync()
        flat, counts, displs = self.group.slots[root]
        start = displs[self.rank]
        recvbuf.reshape(-1)[:] = flat[start:start + counts[self.rank]]
        self._sync()

    def Gatherv(self, sendbuf, recvbuf, root=0):
        self._record('Gatherv')
        self.group.slots[self.rank] = np.array(sendbuf, copy=True).reshape(-1)
        self._sync()
        if self.rank == root:
            flat, counts, displs = _vector(recvbuf)
            for rank in range(self.group.size):
                flat[displs[rank]:displs[rank] + counts[rank]] = self.group.slots[rank][:counts[rank]]
        self._sync()

    def Sendrecv(self, sendbuf, dest, sendtag=0, recvbuf=None, source=PROC_NULL, recvtag=0):
        self._record('Sendrecv')
        group = self.group
        if dest != PROC_NULL:
            with group.cond:
                group.mailbox[(self.rank, dest, sendtag)] = np.array(sendbuf, copy=True)
                group.cond.notify_all()
        if source == PROC_NULL:
            return
        key = (source, self.rank, recvtag)
        with group.cond:
            arrived = group.cond.wait_for(
                lambda: key in group.mailbox or group.abort_code is not None, timeout=TIMEOUT)
            if not arrived or key not in group.mailbox:
                raise RuntimeError(f"rank {self.rank}: no message from rank {source} (tag {recvtag})")
            data = group.mailbox.pop(key)
        recvbuf.reshape(-1)[:] = data.reshape(-1)

    def Barrier(self):
        self._record('Barrier')
        self._sync()

    def Abort(self, errorcode=1):
        group = self.group
        with group.cond:
            group.abort_code = errorcode
            group.cond.notify_all()
        group.barrier.abort()
        raise RankAborted(errorcode)


def run_ranks(size, target):
    """Call target(comm) on `size` threads; returns (results, errors, group); lists are indexed by rank."""
    group = ThreadGroup(size)
    results = [None] * size
    errors = [None] * size

    def body(comm):
        try:
            results[comm.rank] = target(comm)
        except BaseException as exc:  # collected and asserted on by the test
            errors[comm.rank] = exc
            group.barrier.abort()

    threads = [threading.Thread(target=body, args=(comm,)) for comm in group.comms()]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(TIMEOUT * 2)
    return results, errors, group
