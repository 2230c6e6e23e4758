# -*- encoding: utf-8 -*-
import typing

import attr

from threadscope.profiling import collector


@collector.register_mode
@attr.s(eq=False, init=False)
class CustomCollector(collector.EventCollector):
    """A collector that samples only when told to.

    Each call to `sample` records the call stack of the calling thread with a weight of 1::

        c = CustomCollector()
        c.start()
        for item in work:
            process(item)
            c.sample()
        result = c.stop()
    """

    mode = "custom"
    __running_state__ = collector.CollectorState.OPEN

    def sample(self, skip_frames=0):
        # type: (int) -> typing.Optional[int]
        """Sample the call stack of the calling thread, leaving this method out.

        :param skip_frames: The number of additional innermost frames to leave out.
        :return: The stack index of the sample, or `None` if the collector is paused after a fork.
        :raise StateError: if the collector is not open.
        """
        if self.state is not collector.CollectorState.OPEN:
            raise collector.StateError(self.__class__, self.state, "samples can only be taken while open")
        if self._paused:
            return None
        self._source.flush()
        stack_id = self.interner.intern_current_stack(skip_frames=skip_frames + 1)
        if stack_id is None:
            return None
        self._recorder.push_sample(self._source.current_thread_id(), stack_id, 1, self.current_time())
        return stack_id
