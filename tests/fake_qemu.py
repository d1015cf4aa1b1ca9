"""
Stand-in for a QEMU binary, used by the machine tests.

It understands just enough of QEMU's command line to connect to the
QMP, qtest and serial sockets it is given, and just enough QMP to greet,
negotiate, answer a few commands and run a fake background job.

Extra options:
  --fail               exit with status 1 right away
  --write-fd=N         write "hello" to file descriptor N
"""

import json
import os
import socket
import sys
import time


def parse_address(value):
    """Return (family, address) for a chardev option string or URI."""
    if value.startswith('{'):
        addr = json.loads(value)['backend']['data']['addr']
        if addr['type'] == 'unix':
            return socket.AF_UNIX, addr['path']
        return socket.AF_INET, (addr['host'], int(addr['port']))
    if value.startswith('unix:'):
        return socket.AF_UNIX, value[len('unix:'):]
    if value.startswith('tcp:'):
        host, port = value[len('tcp:'):].rsplit(':', 1)
        return socket.AF_INET, (host, int(port))
    opts = dict(opt.split('=', 1) for opt in value.split(',') if '=' in opt)
    if 'path' in opts:
        return socket.AF_UNIX, opts['path']
    return socket.AF_INET, (opts['host'], int(opts['port']))


def connect(value):
    family, address = parse_address(value)
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.connect(address)
    return sock


class FakeMonitor:
    def __init__(self, sock):
        self.sock = sock
        self.rfile = sock.makefile('rb')
        self.jobs = {}

    def send(self, msg):
        self.sock.sendall(json.dumps(msg).encode('utf-8') + b'\n')

    def event(self, name, data=None):
        now = time.time()
        self.send({'event': name, 'data': data or {},
                   'timestamp': {'seconds': int(now),
                                 'microseconds': int(now * 1e6) % 1000000}})

    def job_status(self, job_id, status):
        self.jobs[job_id] = status
        self.event('JOB_STATUS_CHANGE', {'id': job_id, 'status': status})

    def run(self):
        self.send({'QMP': {'version': {'qemu': {'major': 9, 'minor': 0,
                                                'micro': 0},
                                       'package': ''},
                           'capabilities': ['oob']}})
        for line in self.rfile:
            if not line.strip():
                continue
            cmd = json.loads(line)
            if self.dispatch(cmd['execute'], cmd.get('arguments', {})):
                return

    def dispatch(self, name, args):
        # pylint: disable=too-many-return-statements
        if name in ('qmp_capabilities', 'block_resize'):
            self.send({'return': {}})
        elif name == 'query-status':
            self.send({'return': {'status': 'running', 'running': True}})
        elif name == 'stop':
            self.event('STOP')
            self.send({'return': {}})
        elif name == 'blockdev-mirror':
            job_id = args['job-id']
            self.job_status(job_id, 'created')
            self.job_status(job_id, 'running')
            self.send({'return': {}})
            self.job_status(job_id, 'ready')
        elif name == 'block-job-complete':
            job_id = args['device']
            self.job_status(job_id, 'waiting')
            self.job_status(job_id, 'pending')
            self.event('BLOCK_JOB_COMPLETED', {'device': job_id})
            self.job_status(job_id, 'concluded')
            self.send({'return': {}})
        elif name == 'job-dismiss':
            self.send({'return': {}})
            self.job_status(args['id'], 'null')
            del self.jobs[args['id']]
        elif name == 'query-jobs':
            self.send({'return': [{'id': i, 'status': s}
                                  for i, s in self.jobs.items()]})
        elif name == 'quit':
            self.send({'return': {}})
            self.event('SHUTDOWN', {'guest': False, 'reason': 'host-qmp-quit'})
            return True
        else:
            self.send({'error': {'class': 'CommandNotFound',
                                 'desc': f"The command {name} has not "
                                         "been found"}})
        return False


def main(argv):
    print('fake_qemu: starting', file=sys.stderr, flush=True)

    if '--fail' in argv:
        print('fake_qemu: failing as requested', file=sys.stderr)
        return 1

    monitor = None
    serial = None
    extra = []
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg.startswith('--write-fd='):
            os.write(int(arg.split('=', 1)[1]), b'hello')
        elif arg in ('-chardev', '--chardev'):
            monitor = connect(argv[i + 1])
            i += 1
        elif arg == '-qtest':
            extra.append(connect(argv[i + 1]))
            i += 1
        elif arg == '-serial':
            serial = connect(argv[i + 1])
            serial.sendall(b'serial ready\n')
            i += 1
        i += 1

    if monitor is None:
        return 2

    FakeMonitor(monitor).run()

    for sock in extra + [serial, monitor]:
        if sock is not None:
            sock.close()
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
