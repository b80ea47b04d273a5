import json
import logging

from imgcrawler.utils.config import LoggingConfig
from imgcrawler.utils.logger import JSONFormatter, get_crawler_logger, setup_logging
from imgcrawler.utils.monitoring import CrawlerMonitor, MetricsCollector


class TestCrawlerMonitor:

    def test_counts_crawl_events(self):
        monitor = CrawlerMonitor()
        monitor.record_page_crawled(0.5)
        monitor.record_page_crawled(0.25)
        monitor.record_page_failed()
        monitor.record_images(3)
        monitor.record_images(0)
        monitor.record_asset_downloaded()
        monitor.record_asset_skipped()
        monitor.record_error('fetch')
        monitor.record_error('fetch')
        monitor.update_queue_size(7)

        metrics = monitor.get_summary()['metrics']
        assert metrics['pages_crawled_total'] == 2
        assert metrics['pages_failed_total'] == 1
        assert metrics['images_recorded_total'] == 3
        assert metrics['assets_downloaded_total'] == 1
        assert metrics['assets_skipped_total'] == 1
        assert metrics['errors_total:error_type=fetch'] == 2
        assert metrics['queue_size'] == 7

    def test_collectors_do_not_share_registries(self):
        first, second = MetricsCollector(), MetricsCollector()
        first.increment_counter('pages_crawled_total')

        assert first.registry.get_sample_value('imgcrawler_pages_crawled_total') == 1
        assert second.registry.get_sample_value('imgcrawler_pages_crawled_total') == 0

    def test_server_not_started_when_disabled(self):
        # Would raise or bind a port if it tried to serve
        MetricsCollector(enable_prometheus=False, prometheus_port=-1).start_server()


class TestLogging:

    def test_json_formatter_includes_url_context(self):
        record = logging.LogRecord('imgcrawler', logging.INFO, __file__, 1, 'fetched', None, None)
        record.url = 'https://example.com'
        record.state = 'fetching'
        record.worker = 'worker-0'

        entry = json.loads(JSONFormatter().format(record))

        assert entry['message'] == 'fetched'
        assert entry['level'] == 'INFO'
        assert entry['url'] == 'https://example.com'
        assert entry['state'] == 'fetching'
        assert entry['worker'] == 'worker-0'

    def test_adapter_prefixes_worker(self, caplog):
        log = get_crawler_logger('imgcrawler.test', worker='worker-3')

        with caplog.at_level(logging.INFO, logger='imgcrawler.test'):
            log.log_url_event(logging.INFO, 'https://example.com/a', 'done', 'Processed page')

        record = caplog.records[-1]
        assert record.getMessage() == '[worker-3] Processed page'
        assert record.url == 'https://example.com/a'
        assert record.state == 'done'

    def test_setup_logging_creates_log_files(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            config = LoggingConfig(level='DEBUG', file=str(tmp_path / 'logs' / 'crawler.log'))
            setup_logging(config, enable_json=True)
            logging.getLogger('imgcrawler.test').error('something broke')
            for handler in root.handlers:
                handler.flush()

            assert (tmp_path / 'logs' / 'crawler.log').exists()
            errors = (tmp_path / 'logs' / 'errors.log').read_text(encoding='utf-8')
            assert json.loads(errors.splitlines()[-1])['message'] == 'something broke'
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
