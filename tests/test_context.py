import os
import tempfile
import threading
from unittest import mock

import avocado

from vmharness.context import (
    SOCK_DIR_ENV,
    HarnessContext,
    InputLog,
    default_context,
)


class Transcript(avocado.Test):

    def testRecord(self):
        log = InputLog()
        self.assertEqual(log.dump(), '')
        log.record('{"execute":"stop"}')
        log.record('{"execute":"cont"}\n')
        self.assertEqual(log.dump(),
                         '{"execute":"stop"}\n{"execute":"cont"}\n')

    def testSystem(self):
        log = InputLog()
        self.assertEqual(log.system('true'), 0)
        self.assertEqual(log.system('exit 3'), 3)
        self.assertEqual(log.dump(), '$ true\n$ exit 3\n')

    def testPrintAtExit(self):
        log = InputLog()
        with mock.patch('atexit.register') as register:
            log.print_at_exit()
        register.assert_called_once()


class Context(avocado.Test):

    def testSockDir(self):
        self.assertEqual(HarnessContext(sock_dir='/run/x').sock_dir, '/run/x')
        with mock.patch.dict(os.environ, {SOCK_DIR_ENV: '/run/y'}):
            self.assertEqual(HarnessContext().sock_dir, '/run/y')
            self.assertEqual(HarnessContext(sock_dir='/run/x').sock_dir,
                             '/run/x')
        with mock.patch.dict(os.environ, clear=True):
            self.assertEqual(HarnessContext().sock_dir,
                             tempfile.gettempdir())

    def testInstanceIds(self):
        ctx = HarnessContext()
        pid = os.getpid()
        self.assertEqual(ctx.next_instance_id(), f"{pid}-0")
        self.assertEqual(ctx.next_instance_id(), f"{pid}-1")
        self.assertEqual(HarnessContext().next_instance_id(), f"{pid}-0")

    def testInstanceIdsThreaded(self):
        ctx = HarnessContext()
        ids = []

        def worker():
            for _ in range(100):
                ids.append(ctx.next_instance_id())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(set(ids)), 400)

    def testDefault(self):
        self.assertIs(default_context(), default_context())
        self.assertIsNone(default_context().transcript)
