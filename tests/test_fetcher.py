"""
Tests for the fetcher against a local aiohttp server.
"""

import asyncio
from unittest.mock import patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from imgcrawler.crawler.fetcher import (
    FetchResult,
    HttpPageFetcher,
    PageFetcher,
    WebFetcher,
    needs_rendering,
)
from imgcrawler.crawler.rate_limiter import RateLimiter
from imgcrawler.exceptions import FetchError


STATIC_HTML = '<html><body><img src="/a.png"><a href="/next">next</a></body></html>'
APP_SHELL_HTML = '<html><body><div id="root"></div><script src="/bundle.js"></script></body></html>'
PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 1024


@pytest_asyncio.fixture
async def site():
    """Local site with static, redirecting, flaky and binary endpoints."""
    state = {'hits': {}, 'agents': []}

    def hit(name):
        state['hits'][name] = state['hits'].get(name, 0) + 1
        return state['hits'][name]

    async def static(request):
        hit('static')
        state['agents'].append(request.headers.get('User-Agent'))
        return web.Response(text=STATIC_HTML, content_type='text/html')

    async def redirect(request):
        raise web.HTTPFound('/landing')

    async def landing(request):
        return web.Response(text='<img src="landed.png">', content_type='text/html')

    async def flaky(request):
        state['agents'].append(request.headers.get('User-Agent'))
        if hit('flaky') < 3:
            return web.Response(status=500, text='try again')
        return web.Response(text=STATIC_HTML, content_type='text/html')

    async def broken(request):
        hit('broken')
        return web.Response(status=503, text='down')

    async def document(request):
        hit('document')
        return web.Response(body=b'%PDF-1.4', content_type='application/pdf')

    async def shell(request):
        return web.Response(text=APP_SHELL_HTML, content_type='text/html')

    async def image(request):
        return web.Response(body=PNG_BYTES, content_type='image/png')

    async def slow_image(request):
        response = web.StreamResponse(headers={'Content-Type': 'image/png'})
        await response.prepare(request)
        for _ in range(6):
            await response.write(b'\x00' * 512)
            await asyncio.sleep(0.1)
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get('/static', static)
    app.router.add_get('/redirect', redirect)
    app.router.add_get('/landing', landing)
    app.router.add_get('/flaky', flaky)
    app.router.add_get('/broken', broken)
    app.router.add_get('/document.pdf', document)
    app.router.add_get('/shell', shell)
    app.router.add_get('/image.png', image)
    app.router.add_get('/slow.png', slow_image)

    server = test_utils.TestServer(app)
    await server.start_server()
    server.state = state
    yield server
    await server.close()


class FakeRenderFetcher(PageFetcher):
    """Rendering strategy that returns canned DOM content."""

    name = 'render'

    def __init__(self, content='<img src="/rendered.png">', error=None):
        self.content = content
        self.error = error
        self.calls = []
        self.closed = False

    async def fetch_page(self, url, user_agent):
        self.calls.append((url, user_agent))
        if self.error:
            raise self.error
        return FetchResult(url=url, final_url=url, status_code=200,
                           content=self.content, rendered=True)

    async def close(self):
        self.closed = True


def make_fetcher(user_agents=None, **kwargs):
    kwargs.setdefault('render_fallback', False)
    kwargs.setdefault('request_timeout', 2.0)
    return WebFetcher(
        user_agents=user_agents or ['agent-one', 'agent-two'],
        rate_limiter=RateLimiter(min_interval=0, max_concurrent=5),
        **kwargs
    )


def url_for(server, path):
    return str(server.make_url(path))


class TestNeedsRendering:

    @pytest.mark.parametrize('html', [
        APP_SHELL_HTML,
        '<html><body><script>document.write("hi")</script></body></html>',
        '<div id="app"></div>',
        '<html><body data-reactroot=""><p>x</p></body></html>',
        '<noscript>Please enable JavaScript to view this site.</noscript>',
    ])
    def test_script_driven_pages(self, html):
        assert needs_rendering(html)

    @pytest.mark.parametrize('html', [
        '',
        None,
        STATIC_HTML,
        '<div id="root"><p>Server rendered</p></div>',
    ])
    def test_static_pages(self, html):
        assert not needs_rendering(html)


class TestWebFetcher:

    @pytest.mark.asyncio
    async def test_fetch_success(self, site):
        url = url_for(site, '/static')
        async with make_fetcher() as fetcher:
            result = await fetcher.fetch(url)

        assert result.status_code == 200
        assert result.content == STATIC_HTML
        assert result.url == url
        assert result.final_url == url
        assert result.attempts == 1
        assert not result.rendered
        assert fetcher.get_stats()['successful_requests'] == 1

    @pytest.mark.asyncio
    async def test_final_url_follows_redirect(self, site):
        async with make_fetcher() as fetcher:
            result = await fetcher.fetch(url_for(site, '/redirect'))

        assert result.url == url_for(site, '/redirect')
        assert result.final_url == url_for(site, '/landing')

    @pytest.mark.asyncio
    async def test_retries_until_success(self, site):
        async with make_fetcher() as fetcher:
            result = await fetcher.fetch(url_for(site, '/flaky'))

        assert result.attempts == 3
        assert site.state['hits']['flaky'] == 3
        assert fetcher.get_stats()['retries'] == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, site):
        url = url_for(site, '/broken')
        async with make_fetcher() as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(url)

        error = exc_info.value
        assert error.url == url
        assert error.attempts == 3
        assert error.status_code == 503
        assert site.state['hits']['broken'] == 3
        assert fetcher.get_stats()['failed_requests'] == 1

    @pytest.mark.asyncio
    async def test_non_html_is_not_retried(self, site):
        async with make_fetcher() as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(url_for(site, '/document.pdf'))

        assert exc_info.value.attempts == 1
        assert site.state['hits']['document'] == 1

    @pytest.mark.asyncio
    async def test_connection_failure_raises_fetch_error(self, site):
        url = url_for(site, '/static')
        await site.close()

        async with make_fetcher() as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(url)

        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_user_agent_rotates_per_attempt(self, site):
        agents = ['agent-a', 'agent-b', 'agent-c']
        with patch('imgcrawler.crawler.fetcher.random.choice', side_effect=agents):
            async with make_fetcher(user_agents=agents) as fetcher:
                await fetcher.fetch(url_for(site, '/flaky'))

        assert site.state['agents'] == agents

    @pytest.mark.asyncio
    async def test_user_agent_drawn_from_pool(self, site):
        async with make_fetcher() as fetcher:
            for _ in range(5):
                await fetcher.fetch(url_for(site, '/static'))

        assert set(site.state['agents']) <= {'agent-one', 'agent-two'}

    @pytest.mark.asyncio
    async def test_render_fallback_for_app_shell(self, site):
        renderer = FakeRenderFetcher()
        async with make_fetcher(render_fallback=True, render_fetcher=renderer) as fetcher:
            result = await fetcher.fetch(url_for(site, '/shell'))

        assert result.rendered
        assert result.content == '<img src="/rendered.png">'
        assert result.attempts == 2
        assert renderer.calls[0][0] == url_for(site, '/shell')
        assert renderer.closed

    @pytest.mark.asyncio
    async def test_static_page_not_rendered(self, site):
        renderer = FakeRenderFetcher()
        async with make_fetcher(render_fallback=True, render_fetcher=renderer) as fetcher:
            result = await fetcher.fetch(url_for(site, '/static'))

        assert not result.rendered
        assert renderer.calls == []

    @pytest.mark.asyncio
    async def test_render_disabled(self, site):
        renderer = FakeRenderFetcher()
        async with make_fetcher(render_fallback=False, render_fetcher=renderer) as fetcher:
            result = await fetcher.fetch(url_for(site, '/shell'))

        assert result.content == APP_SHELL_HTML
        assert renderer.calls == []

    @pytest.mark.asyncio
    async def test_render_failure_is_retried_then_raised(self, site):
        renderer = FakeRenderFetcher(error=FetchError('x', 'Render timeout'))
        async with make_fetcher(render_fallback=True, render_fetcher=renderer) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(url_for(site, '/shell'))

        assert len(renderer.calls) == 3
        assert exc_info.value.message == 'Render timeout'

    @pytest.mark.asyncio
    async def test_download_streams_to_file(self, site, tmp_path):
        destination = tmp_path / 'image.png'
        async with make_fetcher() as fetcher:
            size = await fetcher.download(url_for(site, '/image.png'), destination)

        assert size == len(PNG_BYTES)
        assert destination.read_bytes() == PNG_BYTES
        assert not (tmp_path / 'image.png.part').exists()

    @pytest.mark.asyncio
    async def test_slow_download_not_cut_off_by_request_timeout(self, site, tmp_path):
        # About 0.6 s in total, but no single read waits longer than 0.1 s
        destination = tmp_path / 'slow.png'
        async with make_fetcher(request_timeout=0.3) as fetcher:
            size = await fetcher.download(url_for(site, '/slow.png'), destination)

        assert size == 6 * 512
        assert destination.stat().st_size == 6 * 512

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_file(self, site, tmp_path):
        destination = tmp_path / 'missing.png'
        async with make_fetcher() as fetcher:
            with pytest.raises(FetchError):
                await fetcher.download(url_for(site, '/broken'), destination)

        assert list(tmp_path.iterdir()) == []


class TestHttpPageFetcher:

    @pytest.mark.asyncio
    async def test_content_size_limit(self, site):
        fetcher = HttpPageFetcher(max_content_size=16)
        try:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch_page(url_for(site, '/static'), 'agent')
        finally:
            await fetcher.close()

        assert not exc_info.value.retryable
