import socket

from qmp_peer import PeerTest, event, greeting

from vmharness.context import InputLog
from vmharness.qmp import (
    ConnectionClosedError,
    ExecuteError,
    GreetingError,
    QMPClient,
    UnexpectedMessageError,
)
from vmharness.qmp.message import DeserializationError


class Greeting(PeerTest):

    def testOOB(self):
        qmp = self.connect('oob')
        self.assertEqual(qmp.greeting, greeting('oob'))
        self.assertEqual(self.sent(), [])

    def testNoCapabilities(self):
        self.connect()
        self.assertEqual(self.sent(), [])

    def testUnknownCapability(self):
        self.push(greeting('oob', 'frobnicate'), {'return': {}})
        with self.assertRaises(GreetingError) as context:
            QMPClient(self.sock)
        self.assertIn('frobnicate', str(context.exception))
        self.assertEqual(self.sent(), [])

    def testNoQMPKey(self):
        self.push({'QAPI': {'capabilities': []}})
        with self.assertRaises(GreetingError):
            QMPClient(self.sock)
        self.assertEqual(self.sent(), [])

    def testNoCapabilityList(self):
        self.push({'QMP': {'version': {}}})
        with self.assertRaises(GreetingError):
            QMPClient(self.sock)
        self.assertEqual(self.sent(), [])

    def testNegotiationFails(self):
        self.push(greeting('oob'),
                  {'error': {'class': 'CommandNotFound', 'desc': 'nope'}})
        with self.assertRaises(GreetingError) as context:
            QMPClient(self.sock)
        self.assertIsInstance(context.exception.__cause__, ExecuteError)

    def testHangup(self):
        self.peer.shutdown(socket.SHUT_WR)
        with self.assertRaises(ConnectionClosedError):
            QMPClient(self.sock)


class Execute(PeerTest):

    def setUp(self):
        super().setUp()
        self.connect('oob')

    def testReturn(self):
        self.push({'return': {'a': 1}})
        self.assertEqual(self.qmp.execute('x'), {'a': 1})
        self.assertEqual(self.sent(), [{'execute': 'x'}])

    def testArguments(self):
        self.push({'return': {}}, {'return': {}})
        self.qmp.execute('device_add', {'driver': 'virtio-blk',
                                        'drive_id': 'd0'})
        self.qmp.execute('stop', {})
        self.assertEqual(self.sent(), [
            {'execute': 'device_add',
             'arguments': {'driver': 'virtio-blk', 'drive_id': 'd0'}},
            {'execute': 'stop'},
        ])

    def testNonObjectReturn(self):
        self.push({'return': [1, 2]}, {'return': 'text'})
        self.assertEqual(self.qmp.execute('a'), [1, 2])
        self.assertEqual(self.qmp.execute('b'), 'text')

    def testError(self):
        reply = {'error': {'class': 'Foo', 'desc': 'bar'}}
        self.push(reply)
        with self.assertRaises(ExecuteError) as context:
            self.qmp.execute('x')
        self.assertEqual(context.exception.reply, reply)
        self.assertEqual(context.exception.error_class, 'Foo')
        self.assertEqual(context.exception.error_desc, 'bar')
        self.assertEqual(str(context.exception), 'bar')

    def testEventsBuffered(self):
        self.push({'event': 'A'}, {'event': 'B'}, {'return': {}})
        self.qmp.execute('x')
        self.assertEqual(self.qmp.events, [{'event': 'A'}, {'event': 'B'}])

        self.assertEqual(self.qmp.event_wait('B'), {'event': 'B'})
        self.assertEqual(self.qmp.events, [{'event': 'A'}])

        self.assertIsNone(self.qmp.event_wait('B', wait=False))
        self.assertEqual(self.qmp.events, [{'event': 'A'}])

    def testUnexpectedMessageSkipped(self):
        self.push({'greeting': 'again'}, {'return': 7})
        with self.assertLogs('vmharness.qmp.client', 'WARNING') as logs:
            self.assertEqual(self.qmp.execute('x'), 7)
        self.assertIn('"greeting": "again"', logs.output[0])

    def testBufferedEventsArePlainDicts(self):
        self.push(event('STOP'), {'return': {}})
        self.qmp.execute('x')
        self.assertIs(type(self.qmp.events[0]), dict)
        self.assertIs(type(self.qmp.event_wait('STOP')), dict)

    def testErrorReplyWithoutObject(self):
        self.push({'error': 'plain'})
        with self.assertRaises(ExecuteError) as context:
            self.qmp.execute('x')
        self.assertIsNone(context.exception.error_class)
        self.assertEqual(str(context.exception), 'plain')

    def testGarbage(self):
        self.push_raw(b'this is not json\n')
        with self.assertRaises(DeserializationError):
            self.qmp.execute('x')

    def testBlankLinesIgnored(self):
        self.push_raw(b'\r\n\n{"return": 1}\r\n')
        self.assertEqual(self.qmp.execute('x'), 1)

    def testHangup(self):
        self.peer.shutdown(socket.SHUT_WR)
        with self.assertRaises(ConnectionClosedError):
            self.qmp.execute('x')


class Command(PeerTest):

    def setUp(self):
        super().setUp()
        self.connect()

    def testTranslated(self):
        self.push({'return': {}})
        self.qmp.command('query_status')
        self.assertEqual(self.sent(), [{'execute': 'query-status'}])

    def testUnderscoreCommand(self):
        self.push({'return': {}}, {'return': {}})
        self.qmp.command('block_resize', node_name='disk0', size=1024)
        self.qmp.command('device_add', {'driver': 'e1000', 'mac_addr': 'x'})
        self.assertEqual(self.sent(), [
            {'execute': 'block_resize',
             'arguments': {'node-name': 'disk0', 'size': 1024}},
            {'execute': 'device_add',
             'arguments': {'driver': 'e1000', 'mac-addr': 'x'}},
        ])

    def testNestedArguments(self):
        self.push({'return': {}})
        self.qmp.command('blockdev_add',
                         {'node_name': 'x', 'file': {'driver': 'y'}})
        self.assertEqual(self.sent(), [
            {'execute': 'blockdev-add',
             'arguments': {'node-name': 'x', 'file': {'driver': 'y'}}},
        ])

    def testKeywordsWin(self):
        self.push({'return': {}})
        self.qmp.command('job_cancel', {'id': 'a', 'force': False},
                         force=True)
        self.assertEqual(self.sent(), [
            {'execute': 'job-cancel',
             'arguments': {'id': 'a', 'force': True}},
        ])

    def testWrappers(self):
        self.push({'return': {}}, {'return': {}}, {'return': {}},
                  {'return': [{'id': 'j1'}]}, {'return': {}})
        self.qmp.block_job_complete('j1')
        self.qmp.job_finalize('j1')
        self.qmp.job_dismiss('j1')
        self.assertEqual(self.qmp.query_jobs(), [{'id': 'j1'}])
        self.qmp.quit()
        self.assertEqual(self.sent(), [
            {'execute': 'block-job-complete', 'arguments': {'device': 'j1'}},
            {'execute': 'job-finalize', 'arguments': {'id': 'j1'}},
            {'execute': 'job-dismiss', 'arguments': {'id': 'j1'}},
            {'execute': 'query-jobs'},
            {'execute': 'quit'},
        ])


class Events(PeerTest):

    def setUp(self):
        super().setUp()
        self.connect('oob')

    def testBlockingSkipsAndBuffers(self):
        stop = event('STOP')
        resume = event('RESUME')
        self.push(stop, resume)
        self.assertEqual(self.qmp.event_wait('RESUME'), resume)
        self.assertEqual(self.qmp.events, [stop])

    def testAnyEvent(self):
        stop = event('STOP')
        self.push(stop)
        self.assertEqual(self.qmp.event_wait(), stop)
        self.assertEqual(self.qmp.events, [])

    def testBufferedFirst(self):
        first = event('BLOCK_JOB_READY', device='j1')
        second = event('BLOCK_JOB_READY', device='j2')
        self.push(first, second, {'return': {}})
        self.qmp.execute('x')
        self.assertEqual(
            self.qmp.event_wait({'data': {'device': 'j2'}}, wait=False),
            second
        )
        self.assertEqual(self.qmp.event_wait(wait=False), first)
        self.assertIsNone(self.qmp.event_wait(wait=False))

    def testMatchWholeMessage(self):
        other = event('BLOCK_JOB_COMPLETED', device='j2')
        mine = event('BLOCK_JOB_COMPLETED', device='j1', len=5)
        self.push(other, mine)
        got = self.qmp.event_wait({'event': 'BLOCK_JOB_COMPLETED',
                                   'data': {'device': 'j1'}})
        self.assertEqual(got, mine)
        self.assertEqual(self.qmp.events, [other])

    def testNonBlockingReadsOnce(self):
        stop = event('STOP')
        resume = event('RESUME')
        self.push(stop)
        self.assertIsNone(self.qmp.event_wait('RESUME', wait=False))
        self.assertEqual(self.qmp.events, [stop])
        self.push(resume)
        self.assertEqual(self.qmp.event_wait('RESUME', wait=False), resume)

    def testNonBlockingPartialLine(self):
        self.push_raw(b'{"event": "ST')
        self.assertIsNone(self.qmp.event_wait(wait=False))
        self.push_raw(b'OP"}\n')
        self.assertEqual(self.qmp.event_wait(wait=False), {'event': 'STOP'})

    def testNonEvent(self):
        self.push({'return': {}})
        with self.assertRaises(UnexpectedMessageError):
            self.qmp.event_wait()

    def testNonEventNonBlocking(self):
        self.push({'return': {}})
        with self.assertRaises(UnexpectedMessageError):
            self.qmp.event_wait(wait=False)

    def testClear(self):
        self.push(event('STOP'), {'return': {}})
        self.qmp.execute('x')
        self.qmp.clear_events()
        self.assertEqual(self.qmp.events, [])
        self.assertIsNone(self.qmp.event_wait(wait=False))


class Match(PeerTest):

    def testEverything(self):
        self.assertTrue(QMPClient.event_match({'event': 'X'}, None))
        self.assertTrue(QMPClient.event_match({'event': 'X'}, {}))

    def testPartial(self):
        ev = {'event': 'X', 'data': {'id': 'j', 'status': 'ready'}}
        self.assertTrue(QMPClient.event_match(ev, {'event': 'X'}))
        self.assertTrue(QMPClient.event_match(ev, {'data': {'id': 'j'}}))
        self.assertTrue(QMPClient.event_match(ev, {'data': {}}))
        self.assertFalse(QMPClient.event_match(ev, {'data': {'id': 'k'}}))
        self.assertFalse(QMPClient.event_match(ev, {'data': {'x': None}}))
        self.assertFalse(QMPClient.event_match(ev, {'event': {'a': 1}}))
        self.assertFalse(QMPClient.event_match(ev, {'event': 'Y'}))


class Tracing(PeerTest):

    def setUp(self):
        super().setUp()
        self.connect()
        self.traced = []
        self.qmp.trace = self.traced.append

    def testOff(self):
        self.push({'return': {}})
        self.qmp.execute('stop')
        self.assertEqual(self.traced, [])

    def testOn(self):
        self.qmp.verbosity = True
        self.push({'return': {}})
        self.qmp.execute('stop')
        self.assertEqual(self.traced, ['{"execute":"stop"}',
                                       '{"return": {}}'])

    def testLabel(self):
        self.qmp.verbosity = 'vm0'
        self.assertEqual(self.qmp.verbosity, 'vm0')
        self.push({'return': {}})
        self.qmp.execute('stop')
        self.assertEqual(self.traced, ['[vm0] {"execute":"stop"}',
                                       '[vm0] {"return": {}}'])


class Transcript(PeerTest):

    def testRecorded(self):
        log = InputLog()
        self.push(greeting(), {'return': {}}, {'return': {}})
        qmp = QMPClient(self.sock, transcript=log)
        qmp.command('query_status')
        self.assertEqual(log.dump(),
                         '{"execute":"qmp_capabilities"}\n'
                         '{"execute":"query-status"}\n')
