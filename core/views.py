from django.http import HttpResponse, JsonResponse

HOME_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>x402 Workflow Facilitator</title>
<style>
    :root {
        font-family: "IBM Plex Sans", system-ui, sans-serif;
        color: #1c1917;
        background: linear-gradient(160deg, #ecfdf5 0%, #fafaf9 60%);
    }
    body {
        margin: 0;
        padding: 4rem 1rem;
    }
    main {
        max-width: 880px;
        margin: 0 auto;
    }
    .eyebrow {
        font-size: 0.8rem;
        letter-spacing: 0.15em;
        text-transform: uppercase;
        color: #047857;
    }
    h1 {
        font-size: 2.75rem;
        margin: 0.5rem 0 1rem;
    }
    p.lead {
        font-size: 1.1rem;
        line-height: 1.55;
    }
    .cta-row {
        display: grid;
        grid-template-columns: repeat(auto-fit, minmax(220px, 1fr));
        gap: 1rem;
        margin-top: 2rem;
    }
    .cta {
        padding: 1rem 1.25rem;
        border-left: 4px solid #10b981;
        background: #ffffff;
    }
    .cta h2 {
        margin: 0;
        font-size: 1rem;
    }
    code {
        font-family: "IBM Plex Mono", monospace;
        color: #065f46;
    }
</style>
</head>
<body>
    <main>
        <div class="eyebrow">x402 · exact scheme</div>
        <h1>Workflow Facilitator</h1>
        <p class="lead">
            x402 payments settled by an attested workflow. Verify checks the signed
            authorization and dispatches the settlement job; settle returns what that job produced.
        </p>
        <div class="cta-row">
            <div class="cta">
                <h2>Verify</h2>
                <p>Check scheme, network, signature, recipient, validity window and balance, then start the workflow.</p>
                <code>POST /verify</code>
            </div>
            <div class="cta">
                <h2>Settle</h2>
                <p>Wait for the tracked workflow and return its transaction hash.</p>
                <code>POST /settle</code>
            </div>
            <div class="cta">
                <h2>Supported</h2>
                <p>Networks and USDC domains accepted for the exact scheme.</p>
                <code>GET /supported</code>
            </div>
        </div>
    </main>
</body>
</html>"""


def home(request):
    return HttpResponse(HOME_PAGE_HTML, content_type="text/html; charset=utf-8")


def health(request):
    return JsonResponse({"status": "ok"})
